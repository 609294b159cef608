# /// script
# requires-python = ">= 3.10"
# dependencies = [
#  "pyyaml",
#  "libclang",
#  "type_enforced",
# ]
# ///

__version__ = "0.1.0"

from dataclasses import dataclass, field
from functools import cached_property
import sys
import clang.cindex
import type_enforced
import yaml
import os
import subprocess
import re
import argparse


#    _
#   |_ ._ ._  _  ._ _
#   |_ |  |  (_) | _>
#
class H2ffiError(Exception):
    pass


class UnsupportedType(H2ffiError, NotImplementedError):
    def __init__(self, kind):
        super().__init__(f"No translation for values of type {kind}")
        self.kind = kind


class MissingConfiguration(H2ffiError, ValueError):
    def __init__(self, field_name):
        super().__init__(f"No {field_name} given.")
        self.field = field_name


#
#   | | _|_ o |  _
#   |_|  |_ | | _>
#
class classproperty(property):
    def __get__(self, owner_self, owner_cls):
        return self.fget(owner_cls)


@type_enforced.Enforcer
def h2ffi_warning(c: clang.cindex.Cursor, msg):
    l = c.location
    prefix = f"h2ffi diagnostic: {l.file}:{l.line}:{l.column}"
    print(
        f"{prefix}: Warning: {msg}",
        file=sys.stderr,
    )


class SystemIncludes:
    # Our libclang version may differ from the "normal" compiler used by the system.
    # This means we may lack the `isystem` headers that the user expects.
    # We use the `$CC` environment variable to detect these headers and add them to our include path.
    @classproperty
    def paths(cls):
        if not (cc := os.getenv("CC")):  # pragma: no cover
            return []

        text = subprocess.check_output(
            f"{cc} -E -Wp,-v -xc /dev/null",
            shell=True,
            text=True,
            stderr=subprocess.STDOUT,
        )
        start_string = "#include <...> search starts here:"
        start_index = text.find(start_string) + len(start_string)
        end_index = text.find("End of search list.", start_index)
        return text[start_index:end_index].split()


@type_enforced.Enforcer
def check_diagnostic(tu: clang.cindex.TranslationUnit):
    # Diagnostics are advisory: we keep going with whatever AST clang produced
    for diagnostic in tu.diagnostics:
        print(f"clang diagnostic: {diagnostic}", file=sys.stderr)


#    _ ___                   _
#   /   |  ._   _|  _       |_   _|_  _  ._   _ o  _  ._
#   \_ _|_ | | (_| (/_ ><   |_ >< |_ (/_ | | _> | (_) | |
#
def attach_to(target):
    """
    Decorator that attaches a function or descriptor (e.g. property, cached_property)
    to a target class.
    Bind `_FOO` to `target.FOO`

    Example:
        @attach_to(clang.cindex.Cursor)
        @cached_property
        def _my_method(self): ...
    """

    def decorator(obj):
        # Get the name for function(__name__), cached property(func), and property(fget)
        try:
            attr_name = obj.__name__
        except AttributeError:
            source = next(o for c in ("func", "fget") if (o := getattr(obj, c, None)))
            attr_name = source.__name__
        finally:
            attr_name = re.sub(r"^_", "", attr_name)
            setattr(target, attr_name, obj)

        # TypeError: Cannot use cached_property instance without calling __set_name__ on it.
        if hasattr(obj, "__set_name__"):
            obj.__set_name__(target, attr_name)

        return obj

    return decorator


@attach_to(clang.cindex.Cursor)
@cached_property
def _child_cursors(self):
    """Immediate children, materialized once as an ordered list."""
    return list(self.get_children())


@attach_to(clang.cindex.Cursor)
def _is_anonymous_tag(self):
    # Fix for `typedef struct { int a; } A9_t;`, where `is_anonymous()` returns False.
    # Fortunately, Clang uses `@SA@`/`@EA@` (and `@Sa@`/`@Ea@`) in the USR for anonymous tags.
    if not self.spelling or self.is_anonymous():
        return True
    return any(t in self.get_usr() for t in ("@SA@", "@Sa@", "@EA@", "@Ea@"))


@type_enforced.Enforcer
def desugar(t: clang.cindex.Type, kind):
    """
    Peel typedef and elaborated sugar off `t` until its kind is `kind`.

    Unlike `get_canonical()`, the types nested inside the result keep their
    sugar, so the element of `my_Point pts[4]` still names `my_Point`.
    The caller guarantees that the canonical kind of `t` is `kind`.
    """
    while t.kind != kind:
        match t.kind:
            case clang.cindex.TypeKind.ELABORATED:
                t = t.get_named_type()
            case clang.cindex.TypeKind.TYPEDEF:
                t = t.get_declaration().underlying_typedef_type
            case _:
                t = t.get_canonical()
    return t


#   |\ |  _. ._ _   _   _
#   | \| (_| | | | (/_ _>
#
def strip_prefix(name, prefixes):
    matches = [p for p in prefixes if p and name.startswith(p)]
    if not matches:
        return name
    return name[len(max(matches, key=len)) :]


def lex_identifier(name):
    """
    Split `name` into words and `_` separators.

    A word ends at an underscore, before an uppercase letter that follows a
    lowercase letter or a digit (`wordStart`), and before the last uppercase
    letter of an acronym that is followed by a lowercase one (`ABBRevWord`).
    """
    word = ""
    for i, ch in enumerate(name):
        if ch == "_":
            if word:
                yield word
                word = ""
            yield "_"
            continue

        if ch.isupper() and word:
            prev = name[i - 1]
            next_ = name[i + 1 : i + 2]
            if prev.islower() or prev.isdigit() or next_.islower():
                yield word
                yield "_"
                word = ""
        word += ch

    if word:
        yield word


def to_member_identifier(name, prefixes=()):
    tokens = list(lex_identifier(strip_prefix(name, prefixes)))

    # Remove leading separators, then collapse runs of them
    while tokens and tokens[0] == "_":
        tokens.pop(0)
    words = [t for i, t in enumerate(tokens) if not (t == "_" and tokens[i - 1] == "_")]
    return "".join(words).lower()


def to_type_identifier(name, prefixes=()):
    return strip_prefix(name, prefixes)


#   |\/|  _   _|  _  |
#   |  | (_) (_| (/_ |
#
# Type descriptors: the marshaling representation of a C type
@dataclass(frozen=True)
class Integer:
    ffi_name: str
    signed: bool
    width: int


@dataclass(frozen=True)
class Floating:
    ffi_name: str
    width: int


@dataclass(frozen=True)
class Void:
    pass


@dataclass(frozen=True)
class Pointer:
    pass


@dataclass(frozen=True)
class String:
    pass


@dataclass(frozen=True)
class Array:
    element: object
    length: int


@dataclass(frozen=True)
class Reference:
    artifact: object


# Artifacts: one per bound declaration
@dataclass(frozen=True)
class Enum:
    name: str
    constants: tuple = ()  # (name, literal value text or None)


@dataclass(frozen=True)
class Field:
    name: str
    type: object


@dataclass(frozen=True)
class Struct:
    name: str
    fields: tuple = ()


@dataclass(frozen=True)
class Parameter:
    name: str
    type: object
    label: str


@dataclass(frozen=True)
class Callback:
    name: str
    parameters: tuple
    return_type: object
    return_label: str


@dataclass(frozen=True)
class Function:
    name: str
    parameters: tuple
    return_type: object
    return_label: str
    comment: str = ""
    variadic: bool = False


@dataclass
class PassState:
    """Accumulator threaded through the single pass over the declarations."""

    symbols: dict = field(default_factory=dict)
    artifacts: list = field(default_factory=list)
    previous_end: clang.cindex.SourceLocation | None = None

    def declare(self, artifact, *aliases):
        self.artifacts.append(artifact)
        for name in (artifact.name, *aliases):
            self.symbols.setdefault(name, artifact)


#    _                ___
#   |_) _. ._ _  _     |    ._   _
#   |  (_| | _> (/_    | \/ |_) (/_
#                        /  |
INTEGER_TYPES = {
    clang.cindex.TypeKind.CHAR_S: ("char", True),
    clang.cindex.TypeKind.SCHAR: ("char", True),
    clang.cindex.TypeKind.CHAR_U: ("uchar", False),
    clang.cindex.TypeKind.UCHAR: ("uchar", False),
    clang.cindex.TypeKind.SHORT: ("short", True),
    clang.cindex.TypeKind.USHORT: ("ushort", False),
    clang.cindex.TypeKind.INT: ("int", True),
    clang.cindex.TypeKind.UINT: ("uint", False),
    clang.cindex.TypeKind.LONG: ("long", True),
    clang.cindex.TypeKind.ULONG: ("ulong", False),
    clang.cindex.TypeKind.LONGLONG: ("long_long", True),
    clang.cindex.TypeKind.ULONGLONG: ("ulong_long", False),
    clang.cindex.TypeKind.BOOL: ("bool", False),
}

FLOATING_TYPES = {
    clang.cindex.TypeKind.FLOAT: "float",
    clang.cindex.TypeKind.DOUBLE: "double",
    clang.cindex.TypeKind.LONGDOUBLE: "long_double",
}

# Plain `char`, whatever its signedness on the target
STRING_POINTEES = {clang.cindex.TypeKind.CHAR_S, clang.cindex.TypeKind.CHAR_U}


def type_label(artifact, prefixes):
    match artifact:
        case Callback():
            return "Callback"
        case Enum(name=name) | Struct(name=name):
            return to_type_identifier(name, prefixes)
        case _:  # pragma: no cover
            raise NotImplementedError(f"type_label: {artifact}")


@type_enforced.Enforcer
def resolve_pointer(t: clang.cindex.Type, symbols: dict, prefixes):
    name = t.get_declaration().spelling
    pointee = desugar(t, clang.cindex.TypeKind.POINTER).get_pointee()
    if pointee.get_canonical().kind in STRING_POINTEES:
        return String(), "String"

    # Pointees are only classified, never resolved.
    # Anonymous tags spell as `struct (unnamed at /path.h:L:C)`: treat them as unnamed
    decl = pointee.get_declaration()
    pointee_name = "" if decl.is_anonymous_tag() else decl.spelling
    if pointee_name and (artifact := symbols.get(pointee_name)):
        label = f"FFI::Pointer of {type_label(artifact, prefixes)}"
    elif pointee_name:
        label = f"FFI::Pointer to {pointee_name}"
    elif name:
        label = f"FFI::Pointer of {to_type_identifier(name, prefixes)}"
    else:
        label = "FFI::Pointer"
    return Pointer(), label


@type_enforced.Enforcer
def resolve_type(t: clang.cindex.Type, symbols: dict, prefixes=()):
    """
    Return the `(descriptor, label)` pair of `t`.

    A type whose declaration is a known artifact always resolves to a
    `Reference`; everything else is classified by its canonical kind.
    """
    name = t.get_declaration().spelling
    if name and (artifact := symbols.get(name)):
        return Reference(artifact), type_label(artifact, prefixes)

    canonical = t.get_canonical()
    match k := canonical.kind:
        case _ if k in INTEGER_TYPES:
            ffi_name, signed = INTEGER_TYPES[k]
            label = "Boolean" if k == clang.cindex.TypeKind.BOOL else "Integer"
            return Integer(ffi_name, signed, canonical.get_size() * 8), label
        case _ if k in FLOATING_TYPES:
            return Floating(FLOATING_TYPES[k], canonical.get_size() * 8), "Float"
        case clang.cindex.TypeKind.VOID:
            return Void(), "nil"
        case clang.cindex.TypeKind.POINTER:
            return resolve_pointer(t, symbols, prefixes)
        case clang.cindex.TypeKind.CONSTANTARRAY:
            array = desugar(t, k)
            element, label = resolve_type(array.element_type, symbols, prefixes)
            return Array(element, array.element_count), f"Array<{label}>"
        case clang.cindex.TypeKind.ENUM | clang.cindex.TypeKind.RECORD if (
            artifact := symbols.get(canonical.get_declaration().spelling)
        ):
            # `typedef enum color color_t;` names an artifact through its canonical type
            return Reference(artifact), type_label(artifact, prefixes)
        case clang.cindex.TypeKind.ENUM:
            return resolve_type(canonical.get_declaration().enum_type, symbols, prefixes)
        case _:
            raise UnsupportedType(k)


#    _
#   /   _  ._ _  ._ _   _  ._ _|_  _
#   \_ (_) | | | | | | (/_ | | |_ _>
#
@dataclass
class CommentBundle:
    description: list = field(default_factory=list)
    params: dict = field(default_factory=dict)
    returns: list = field(default_factory=list)

    @staticmethod
    def join(lines):
        return " ".join(" ".join(lines).split())

    def param_text(self, name):
        return self.join(self.params.get(name, []))

    @property
    def return_text(self):
        return self.join(self.returns)


@type_enforced.Enforcer
def harvest_comment(
    tu: clang.cindex.TranslationUnit,
    previous_end,
    start: clang.cindex.SourceLocation,
):
    """Return the spelling of the last comment between `previous_end` and `start`."""
    if previous_end is None or str(previous_end.file) != str(start.file):
        previous_end = clang.cindex.SourceLocation.from_offset(tu, start.file, 0)
    if previous_end.offset >= start.offset:
        return ""

    comment = ""
    extent = clang.cindex.SourceRange.from_locations(previous_end, start)
    for token in tu.get_tokens(extent=extent):
        if token.kind == clang.cindex.TokenKind.COMMENT:
            comment = token.spelling
    return comment


def parse_comment(text, parameter_names=()):
    bundle = CommentBundle(params={name: [] for name in parameter_names if name})
    current = bundle.description

    for line in text.split("\n"):
        line = re.sub(r"^\s*[/*]+", "", line)
        line = re.sub(r"\s*\*+/\s*$", "", line)
        line = line.replace("\\brief ", "").replace("[", "(").replace("]", ")")

        if names := re.findall(r"\\param (.*?) ", line):
            line = re.sub(r"\\param (.*?) ", "", line)
            if names[-1] in bundle.params:
                current = bundle.params[names[-1]]
            else:
                line = f"{names[-1]}: {line}"
        # `\returns` stays active until the next `\param`
        if re.search(r"\\returns? ", line):
            line = re.sub(r"\\returns? ", "", line)
            current = bundle.returns
        current.append(line)

    description = bundle.description
    while description and not description[0].strip():
        description.pop(0)
    while description and not description[-1].strip():
        description.pop()
    return bundle


#    _                 _
#   |_) _. ._ _  _    | \  _   _ |
#   |  (_| | _> (/_   |_/ (/_ (_ |
#
@type_enforced.Enforcer
def parse_enum_constant_decl(c: clang.cindex.Cursor):
    assert c.kind == clang.cindex.CursorKind.ENUM_CONSTANT_DECL

    child = next(iter(c.child_cursors), None)
    # Nothing right to `=` sign, or not a plain literal: implicit value
    if child is None or child.kind != clang.cindex.CursorKind.INTEGER_LITERAL:
        return (c.spelling, None)

    literal = next(child.get_tokens()).spelling
    # If inside a macro, fall back to enum value
    if not literal[:1].isdigit():
        literal = str(c.enum_value)
    return (c.spelling, literal)


@type_enforced.Enforcer
def parse_enum_decl(name: str, c: clang.cindex.Cursor):
    constants = (
        parse_enum_constant_decl(f)
        for f in c.child_cursors
        if f.kind == clang.cindex.CursorKind.ENUM_CONSTANT_DECL
    )
    return Enum(name, tuple(constants))


@type_enforced.Enforcer
def parse_struct_decl(name: str, c: clang.cindex.Cursor, symbols: dict, prefixes):
    # Source order is the binary layout: never reorder
    fields = (
        Field(f.spelling, resolve_type(f.type, symbols, prefixes)[0])
        for f in c.child_cursors
        if f.kind == clang.cindex.CursorKind.FIELD_DECL
    )
    return Struct(name, tuple(fields))


@type_enforced.Enforcer
def parse_parm_decls(cursors: list, symbols: dict, prefixes):
    return tuple(
        Parameter(p.spelling, *resolve_type(p.type, symbols, prefixes))
        for p in cursors
        if p.kind == clang.cindex.CursorKind.PARM_DECL
    )


@type_enforced.Enforcer
def function_prototype(t: clang.cindex.Type):
    """Return the function type `t` points to, or None if `t` is no function pointer."""
    canonical = t.get_canonical()
    if canonical.kind != clang.cindex.TypeKind.POINTER:
        return None
    if canonical.get_pointee().kind not in (
        clang.cindex.TypeKind.FUNCTIONPROTO,
        clang.cindex.TypeKind.FUNCTIONNOPROTO,
    ):
        return None
    return desugar(t, clang.cindex.TypeKind.POINTER).get_pointee()


#   ___                    _    _
#    |    ._   _   _|  _ _|_   | \  _   _ |
#    | \/ |_) (/_ (_| (/_ |    |_/ (/_ (_ |
#      /  |
@type_enforced.Enforcer
def parse_typedef_decl(c: clang.cindex.Cursor, state: PassState, prefixes):
    children = c.child_cursors
    underlying = c.underlying_typedef_type

    if len(children) == 1 and children[0].is_definition():
        child = children[0]
        match child.kind:
            # `typedef struct [tag] { ... } name;`
            case clang.cindex.CursorKind.STRUCT_DECL if (
                underlying.get_canonical().kind == clang.cindex.TypeKind.RECORD
            ):
                struct = parse_struct_decl(c.spelling, child, state.symbols, prefixes)
                tags = () if child.is_anonymous_tag() else (child.spelling,)
                state.declare(struct, *tags)
                return
            # `typedef enum { ... } name;`
            case clang.cindex.CursorKind.ENUM_DECL if child.is_anonymous_tag():
                state.declare(parse_enum_decl(c.spelling, child))
                return

    # `typedef ret (*name)(params);`
    # libclang only exposes a child for the return type when it is named,
    # so the result type is read from the prototype itself.
    if (proto := function_prototype(underlying)) is not None:
        return_type, return_label = resolve_type(
            proto.get_result(), state.symbols, prefixes
        )
        callback = Callback(
            c.spelling,
            parse_parm_decls(children, state.symbols, prefixes),
            return_type,
            return_label,
        )
        state.declare(callback)

    # Anything else is a typedef of a scalar or an opaque pointer: not modeled


#    _                            _
#   |_    ._   _ _|_ o  _  ._    | \  _   _ |
#   | |_| | | (_  |_ | (_) | |   |_/ (/_ (_ |
#
@type_enforced.Enforcer
def parse_function_decl(c: clang.cindex.Cursor, comment: str, symbols: dict, prefixes):
    if c.is_definition():
        h2ffi_warning(
            c, f"`{c.spelling}` is a function definition and will be ignored."
        )
        return None

    variadic = False
    match t := c.type.kind:
        case clang.cindex.TypeKind.FUNCTIONNOPROTO:
            h2ffi_warning(
                c,
                f"`{c.spelling}` defines a function with no parameters, consider specifying `void`.",
            )
        case clang.cindex.TypeKind.FUNCTIONPROTO:
            variadic = c.type.is_function_variadic()
        case _:  # pragma: no cover
            raise NotImplementedError(f"parse_function_decl: {t}")

    return_type, return_label = resolve_type(c.result_type, symbols, prefixes)
    return Function(
        c.spelling,
        parse_parm_decls(c.child_cursors, symbols, prefixes),
        return_type,
        return_label,
        comment,
        variadic,
    )


#   ___
#    | ._ _. ._   _ |  _. _|_ o  _  ._    | | ._  o _|_
#    | | (_| | | _> | (_|  |_ | (_) | |   |_| | | |  |_
#
@type_enforced.Enforcer
def bound_header_files(tu: clang.cindex.TranslationUnit, headers: list):
    """
    Names of the files whose declarations we bind: the configured headers,
    and everything included from the directory of a configured header that
    was given with a directory component (`clang-c/Index.h`).
    """
    included = [os.path.normpath(str(i.include)) for i in tu.get_includes()]

    files, directories = set(), set()
    for filename in included:
        if header := next((h for h in headers if is_header(filename, h)), None):
            files.add(filename)
            if os.path.dirname(header) not in ("", "."):
                directories.add(os.path.dirname(filename) + os.sep)

    files |= {f for f in included if any(f.startswith(d) for d in directories)}
    return files


def is_header(filename, header):
    # `io.h` names `inc/io.h`, never `stdio.h`
    filename, header = os.path.normpath(filename), os.path.normpath(header)
    return filename == header or filename.endswith(os.sep + header)


@type_enforced.Enforcer
def visit_declaration(state: PassState, c: clang.cindex.Cursor, bound: set, config):
    location = c.location
    if not location.file or os.path.normpath(str(location.file)) not in bound:
        return

    start = c.extent.start
    comment_start, state.previous_end = state.previous_end, c.extent.end

    if c.spelling in config.blacklist:
        return

    match c.kind:
        case clang.cindex.CursorKind.ENUM_DECL:
            # Anonymous enums are named by the typedef that follows them
            if not c.is_anonymous_tag():
                state.declare(parse_enum_decl(c.spelling, c))
        case clang.cindex.CursorKind.FUNCTION_DECL:
            comment = harvest_comment(c.translation_unit, comment_start, start)
            function = parse_function_decl(c, comment, state.symbols, config.prefixes)
            if function is not None:
                state.artifacts.append(function)
        case clang.cindex.CursorKind.TYPEDEF_DECL:
            parse_typedef_decl(c, state, config.prefixes)
        case _:
            pass


@type_enforced.Enforcer
def parse_translation_unit(tu: clang.cindex.TranslationUnit, config):
    bound = bound_header_files(tu, list(config.headers))
    state = PassState()
    for c in tu.cursor.child_cursors:
        visit_declaration(state, c, bound, config)
    return state


#    _
#   |_)  _  ._   _|  _  ._
#   | \ (/_ | | (_| (/_ |
#
def render_type(t, prefixes=()):
    match t:
        case Integer(ffi_name=name) | Floating(ffi_name=name):
            return f":{name}"
        case Void():
            return ":void"
        case Pointer():
            return ":pointer"
        case String():
            return ":string"
        case Array(element=element, length=length):
            return f"[{render_type(element, prefixes)}, {length}]"
        case Reference(artifact=Struct(name=name)):
            return f"{to_type_identifier(name, prefixes)}.by_value"
        case Reference(artifact=Enum(name=name) | Callback(name=name)):
            return f":{to_member_identifier(name, prefixes)}"
        case _:  # pragma: no cover
            raise NotImplementedError(f"render_type: {t}")


def enum_prefix_length(constants):
    """
    Length of the `PREFIX_` shared by all constants.

    The candidate is the first constant's name up to its first underscore.
    """
    if not constants:
        return 0
    first = constants[0][0]
    if (i := first.find("_")) < 0:
        return 0
    prefix = first[: i + 1]
    if all(name.startswith(prefix) for name, _ in constants):
        return len(prefix)
    return 0


def render_enum(e, prefixes=()):
    n = enum_prefix_length(e.constants)
    lines = [
        f"\n    :{to_member_identifier(name[n:], prefixes)}"
        + (f", {value}" if value is not None else "")
        for name, value in e.constants
    ]
    return f"  enum :{to_member_identifier(e.name, prefixes)}, [{','.join(lines)}\n  ]"


def render_struct(s, prefixes=()):
    lines = [
        f":{to_member_identifier(f.name, prefixes)}, {render_type(f.type, prefixes)}"
        for f in s.fields
    ]
    # FFI::Struct refuses an empty layout
    layout = ",\n           ".join(lines) or ":dummy, :char"
    name = to_type_identifier(s.name, prefixes)
    return f"  class {name} < FFI::Struct\n    layout {layout}\n  end"


def render_signature(f, prefixes=()):
    types = [render_type(p.type, prefixes) for p in f.parameters]
    if isinstance(f, Function) and f.variadic:
        types.append(":varargs")
    return f"[{', '.join(types)}], {render_type(f.return_type, prefixes)}"


def parameter_identifier(p, prefixes=()):
    # Unnamed parameters are named after their type: `String` -> `string`
    name = p.name or p.label.split()[-1].split("::")[-1]
    return to_member_identifier(name, prefixes)


def render_callback(c, prefixes=()):
    name = to_member_identifier(c.name, prefixes)
    return f"  callback :{name}, {render_signature(c, prefixes)}"


def render_function(f, prefixes=()):
    bundle = parse_comment(f.comment, [p.name for p in f.parameters])
    name = to_member_identifier(f.name, prefixes)
    parameters = [(parameter_identifier(p, prefixes), p) for p in f.parameters]

    lines = []
    if bundle.description:
        lines += [f"  #{line}".rstrip() for line in bundle.description]
        lines.append("  #")
    lines.append(f"  # @method {name}({', '.join(n for n, _ in parameters)})")
    for n, p in parameters:
        lines.append(f"  # @param [{p.label}] {n} {bundle.param_text(p.name)}".rstrip())
    lines.append(f"  # @return [{f.return_label}] {bundle.return_text}".rstrip())
    lines.append("  # @scope class")
    lines.append(
        f"  attach_function :{name}, :{f.name}, {render_signature(f, prefixes)}"
    )
    return "\n".join(lines)


def render_artifact(artifact, prefixes=()):
    match artifact:
        case Enum():
            return render_enum(artifact, prefixes)
        case Struct():
            return render_struct(artifact, prefixes)
        case Callback():
            return render_callback(artifact, prefixes)
        case Function():
            return render_function(artifact, prefixes)
        case _:  # pragma: no cover
            raise NotImplementedError(f"render_artifact: {artifact}")


def render_module(artifacts, config):
    body = "\n\n".join(render_artifact(a, config.prefixes) for a in artifacts)
    return (
        "# Generated by h2ffi. Please do not change this file by hand.\n\n"
        "require 'ffi'\n\n"
        f"module {config.module}\n"
        "  extend FFI::Library\n"
        f"  ffi_lib '{config.library}'\n\n"
        f"{body}\n\n"
        "end\n"
    )


#    _               _
#   | \    ._ _  ._ |_)  \/  /\  |\/| |
#   |_/|_| | | | |_) |   /  /--\ |  | |_
#                |
def type_to_dict(t):
    match t:
        case Integer(ffi_name=name, signed=signed, width=width):
            return {"kind": "int", "name": name, "signed": signed, "width": width}
        case Floating(ffi_name=name, width=width):
            return {"kind": "float", "name": name, "width": width}
        case Void():
            return {"kind": "void"}
        case Pointer():
            return {"kind": "pointer"}
        case String():
            return {"kind": "string"}
        case Array(element=element, length=length):
            return {"kind": "array", "type": type_to_dict(element), "length": length}
        case Reference(artifact=artifact):
            return {"kind": type(artifact).__name__.lower(), "name": artifact.name}
        case _:  # pragma: no cover
            raise NotImplementedError(f"type_to_dict: {t}")


def artifact_to_dict(artifact):
    def params_to_list(params):
        return [
            ({"name": p.name} if p.name else {}) | {"type": type_to_dict(p.type)}
            for p in params
        ]

    match artifact:
        case Enum(name=name, constants=constants):
            members = [
                {"name": n} | ({"val": v} if v is not None else {})
                for n, v in constants
            ]
            return "enums", {"name": name, "members": members}
        case Struct(name=name, fields=fields):
            members = [{"name": f.name, "type": type_to_dict(f.type)} for f in fields]
            return "structs", {"name": name, "members": members}
        case Callback(name=name, parameters=params, return_type=return_type):
            d = {"name": name, "type": type_to_dict(return_type)}
            return "callbacks", d | {"params": params_to_list(params)}
        case Function(name=name, parameters=params, return_type=return_type):
            d = {"name": name, "type": type_to_dict(return_type)}
            d["params"] = params_to_list(params)
            if artifact.variadic:
                d["var_args"] = True
            bundle = parse_comment(artifact.comment, [p.name for p in params])
            if bundle.description:
                d["doc"] = CommentBundle.join(bundle.description)
            return "functions", d
        case _:  # pragma: no cover
            raise NotImplementedError(f"artifact_to_dict: {artifact}")


def dump_yaml(artifacts, config):
    decls = {"module": config.module, "library": config.library}
    for artifact in artifacts:
        key, d = artifact_to_dict(artifact)
        decls.setdefault(key, []).append(d)
    return yaml.dump(decls, Dumper=yaml.CDumper, sort_keys=False)


#    _
#   /   _  ._  _|_ o  _
#   \_ (_) | |  |  | (_|
#                     _|
FORMATS = {"ruby": render_module, "yaml": dump_yaml}


@dataclass
class Config:
    module: str | None = None
    library: str | None = None
    headers: list = field(default_factory=list)
    cflags: list = field(default_factory=list)
    prefixes: list = field(default_factory=list)
    blacklist: list = field(default_factory=list)
    output: str = "-"
    format: str = "ruby"

    def validate(self):
        for name in ("module", "library", "headers"):
            if not getattr(self, name):
                raise MissingConfiguration(name)
        if self.format not in FORMATS:
            raise H2ffiError(f"Unknown output format `{self.format}`.")


def load_config(args):
    """Merge the `--config` YAML file, if any, with the command line."""
    d = {}
    if args.config:
        try:
            with open(args.config, "r") as f:
                d = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise H2ffiError(f"Cannot read `{args.config}`: {e}") from e
        if not isinstance(d, dict):
            raise H2ffiError(f"`{args.config}` is not a mapping.")
        if unknown := set(d) - Config.__dataclass_fields__.keys():
            raise H2ffiError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    for k in ("module", "library", "output", "format"):
        if (v := getattr(args, k)) is not None:
            d[k] = v
    for k in ("headers", "cflags", "prefixes", "blacklist"):
        # `prefixes: clang_` would otherwise be split into characters
        if not isinstance(v := d.get(k) or [], list):
            raise H2ffiError(f"`{k}` must be a list, got `{v}`.")
        d[k] = v + getattr(args, k)
    return Config(**d)


#
#   |\/|  _. o ._
#   |  | (_| | | |
#
def parse_headers(config, unsaved_files=None):
    # Parse an empty main file that force-includes every header, in order
    main_file = "h2ffi_bindings.h"
    args = [a for h in config.headers for a in ("-include", h)]
    system_args = [f"-I{p}" for p in SystemIncludes.paths]
    return clang.cindex.Index.create().parse(
        main_file,
        args=args + list(config.cflags) + system_args,
        unsaved_files=[(main_file, "")] + list(unsaved_files or []),
    )


def build_model(config, *, unsaved_files=None):
    config.validate()
    tu = parse_headers(config, unsaved_files)
    check_diagnostic(tu)
    return parse_translation_unit(tu, config)


def h2ffi(config, *, unsaved_files=None):
    state = build_model(config, unsaved_files=unsaved_files)
    return FORMATS[config.format](state.artifacts, config)


def write_output(text, output):
    if output == "-":
        print(text, end="")
        return
    with open(output, "w") as f:
        f.write(text)
    print(f"h2ffi: {output}", file=sys.stderr)


def split_clang_args(argv):
    """
    Extracts -Wc,foo style options into clang_args,
    handling -Wc,--startgroup ... -Wc,--endgroup as well.
    Returns: (filtered_argv, clang_args)
    """
    d = {"filtered_argv": [], "clang_argv": []}
    inside_group = False
    token = "-Wc,"
    for arg in argv:
        match arg.split(token):
            case [n]:  # nothing after -Wc,
                d["clang_argv" if inside_group else "filtered_argv"].append(n)
            case [n, "--startgroup"]:
                inside_group = True
            case [n, "--endgroup"]:
                inside_group = False
            case [n, *rest]:
                d["clang_argv"].extend(rest)
    return d


def parse_args(argv):
    parser = argparse.ArgumentParser(prog="h2ffi")

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    parser.add_argument("-m", "--module", help="Name of the generated module.")
    parser.add_argument("-l", "--library", help="Library passed to `ffi_lib`.")
    parser.add_argument(
        "-p",
        "--prefix",
        dest="prefixes",
        action="append",
        default=[],
        metavar="PREFIX",
        help="Prefix to strip from generated names (repeatable).",
    )
    parser.add_argument(
        "-b",
        "--blacklist",
        action="append",
        default=[],
        metavar="NAME",
        help="Declaration to leave out of the bindings (repeatable).",
    )
    parser.add_argument(
        "-o", "--output", metavar="FILE", help="Output file (default: stdout)."
    )
    parser.add_argument(
        "--format",
        choices=sorted(FORMATS),
        help="Render Ruby FFI bindings (default) or dump the model as YAML.",
    )
    parser.add_argument(
        "--config", metavar="FILE", help="YAML file holding the same settings."
    )

    parser.add_argument("headers", nargs="*", help="Headers to bind.")

    d = split_clang_args(argv)

    args = parser.parse_args(d["filtered_argv"])
    args.cflags = d["clang_argv"]
    return args


# Main function used by `h2ffi` binary generated by pyproject.toml
def main(args=sys.argv[1:]):
    parsed_args = parse_args(args)
    try:
        config = load_config(parsed_args)
        text = h2ffi(config)
    except H2ffiError as e:
        print(f"h2ffi: error: {e}", file=sys.stderr)
        sys.exit(1)
    write_output(text, config.output)


if __name__ == "__main__":  # pragma: no cover
    main()
