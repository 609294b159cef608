import pathlib
import pytest
import h2ffi
import yaml

TESTS = pathlib.Path(__file__).parent / "tests"

# Utils


def make_config(filename, **kwargs):
    d = {
        "module": "Test",
        "library": "test",
        "headers": [str(TESTS / f"{filename}.h")],
        "prefixes": ["my_"],
    }
    return h2ffi.Config(**(d | kwargs))


def build(filename, **kwargs):
    return h2ffi.build_model(make_config(filename, **kwargs))


def artifact(state, name):
    return next(a for a in state.artifacts if a.name == name)


def run_main(capsys, argv):
    h2ffi.main(argv)
    return capsys.readouterr()


# Identifiers


@pytest.mark.parametrize(
    "name, prefixes, expected",
    [
        ("clang_getCursorKind", ["clang_"], "get_cursor_kind"),
        ("CXXMethod", [], "cxx_method"),
        ("CXCursor_FieldDecl", ["clang_", "CX"], "cursor_field_decl"),
        ("getHTTPResponseCode", [], "get_http_response_code"),
        ("UTF8String", [], "utf8_string"),
        ("vec2Add", [], "vec2_add"),
        ("__private__name", [], "private_name"),
        ("COLOR_RED", [], "color_red"),
        ("trailing_", [], "trailing_"),
        ("CXXFoo", ["CX", "CXX"], "foo"),
    ],
)
def test_to_member_identifier(name, prefixes, expected):
    assert h2ffi.to_member_identifier(name, prefixes) == expected


def test_to_type_identifier():
    prefixes = ["clang_", "CX"]
    assert h2ffi.to_type_identifier("CXCursor", prefixes) == "Cursor"
    assert h2ffi.to_type_identifier("CXXMethod", prefixes) == "XMethod"
    assert h2ffi.to_type_identifier("Cursor", prefixes) == "Cursor"

    once = h2ffi.to_type_identifier("CXCursor", prefixes)
    assert h2ffi.to_type_identifier(once, prefixes) == once


def test_lex_identifier():
    assert list(h2ffi.lex_identifier("CXCursor_FieldDecl")) == [
        "CX",
        "_",
        "Cursor",
        "_",
        "Field",
        "_",
        "Decl",
    ]


# Comments


def test_parse_comment():
    text = "Adds two numbers.\n\\param a First operand.\n\\param b Second operand.\n\\returns The sum."
    bundle = h2ffi.parse_comment(text, ["a", "b"])

    assert bundle.description == ["Adds two numbers."]
    assert bundle.param_text("a") == "First operand."
    assert bundle.param_text("b") == "Second operand."
    assert bundle.return_text == "The sum."


def test_parse_comment_markup():
    text = "/**\n * \\brief See [other].\n *\n * \\param zz Mystery.\n * \\returns Zero,\n *   always.\n */"
    bundle = h2ffi.parse_comment(text, ["a"])

    assert bundle.description == [" See (other).", "", "zz:  Mystery."]
    assert bundle.param_text("a") == ""
    assert bundle.return_text == "Zero, always."


def test_parse_comment_one_line():
    bundle = h2ffi.parse_comment("/** Frees the handle. */", [])
    assert bundle.description == [" Frees the handle."]
    assert bundle.return_text == ""


# Rendering


def test_enum_common_prefix():
    e = h2ffi.Enum(
        "color", (("COLOR_RED", None), ("COLOR_GREEN", None), ("COLOR_BLUE", None))
    )
    assert h2ffi.render_enum(e) == (
        "  enum :color, [\n    :red,\n    :green,\n    :blue\n  ]"
    )


def test_enum_mixed_prefix():
    e = h2ffi.Enum("mixed", (("COLOR_RED", None), ("SHAPE_SQUARE", "3")))
    assert h2ffi.render_enum(e) == (
        "  enum :mixed, [\n    :color_red,\n    :shape_square, 3\n  ]"
    )


def test_enum_prefix_only_first_segment():
    # Only the first underscore of the first constant is a candidate
    assert h2ffi.enum_prefix_length((("A_B_RED", None), ("A_B_BLUE", None))) == 2
    assert h2ffi.enum_prefix_length((("RED", None), ("RED_DARK", None))) == 0
    assert h2ffi.enum_prefix_length(()) == 0


def test_render_empty_struct():
    assert h2ffi.render_struct(h2ffi.Struct("my_Opaque"), ["my_"]) == (
        "  class Opaque < FFI::Struct\n    layout :dummy, :char\n  end"
    )


def test_render_type():
    point = h2ffi.Struct("my_Point")
    assert h2ffi.render_type(h2ffi.Array(h2ffi.Reference(point), 2), ["my_"]) == (
        "[Point.by_value, 2]"
    )
    assert h2ffi.render_type(h2ffi.Integer("ulong_long", False, 64)) == ":ulong_long"
    assert h2ffi.render_type(h2ffi.String()) == ":string"


# Declarations


@pytest.mark.parametrize(
    "filename, module, library",
    [("enum", "Enums", "enums"), ("struct", "Shapes", "shapes")],
)
def test_cmp_to_ref(filename, module, library):
    config = make_config(filename, module=module, library=library)
    with open(TESTS / f"{filename}.rb", "r") as f:
        assert h2ffi.h2ffi(config) == f.read()


def test_determinism():
    config = make_config("struct")
    assert h2ffi.h2ffi(config) == h2ffi.h2ffi(config)


def test_typedef_classification():
    state = build("struct")
    kinds = [(type(a).__name__, a.name) for a in state.artifacts]
    assert kinds == [
        ("Enum", "shape_t"),
        ("Struct", "my_Point"),
        ("Callback", "my_visitor"),
        ("Struct", "my_Shape"),
        ("Callback", "my_factory"),
    ]
    assert "my_size" not in state.symbols
    assert "my_handle" not in state.symbols

    visitor = artifact(state, "my_visitor")
    assert [p.name for p in visitor.parameters] == ["point", "data"]

    factory = artifact(state, "my_factory")
    assert len(factory.parameters) == 3
    assert factory.return_type == h2ffi.Reference(artifact(state, "my_Point"))


def test_callback_parameter_counts():
    state = build("callback")
    assert [(a.name, len(a.parameters)) for a in state.artifacts] == [
        ("my_tick", 1),
        ("my_done", 0),
    ]
    assert all(isinstance(a, h2ffi.Callback) for a in state.artifacts)
    assert artifact(state, "my_tick").parameters[0].name == "count"


def test_field_order():
    shape = artifact(build("struct"), "my_Shape")
    assert [f.name for f in shape.fields] == [
        "origin",
        "corners",
        "shape",
        "label",
        "visit",
        "bytes",
        "user_data",
    ]


def test_forward_reference_falls_back():
    state = build("forward")
    later = artifact(state, "my_Later")

    # Declared after `my_Early`: the pointer is not a reference
    early = artifact(state, "my_Early")
    assert early.fields == (h2ffi.Field("later", h2ffi.Pointer()),)

    assert state.symbols["my_later"] is later
    use = artifact(state, "my_use")
    assert [p.label for p in use.parameters] == [
        "FFI::Pointer of Later",
        "FFI::Pointer of Later",
    ]


def test_function_comments():
    state = build("function", blacklist=["my_blacklisted"])
    names = [a.name for a in state.artifacts]
    assert names == ["my_Ratio", "my_add", "my_undocumented", "my_logf", "my_reduce"]

    assert h2ffi.render_artifact(artifact(state, "my_add"), ["my_"]) == "\n".join(
        [
            "  # Adds two numbers.",
            "  #",
            "  # See (my_sub) for the reverse.",
            "  #",
            "  # @method add(a, b)",
            "  # @param [Integer] a First operand.",
            "  # @param [Integer] b Second operand, possibly negative.",
            "  # @return [Integer] The sum.",
            "  # @scope class",
            "  attach_function :add, :my_add, [:int, :int], :int",
        ]
    )


def test_blacklist_advances_comment_cursor():
    state = build("function", blacklist=["my_blacklisted"])
    undocumented = artifact(state, "my_undocumented")
    assert undocumented.comment == ""

    assert h2ffi.render_artifact(undocumented, ["my_"]) == "\n".join(
        [
            "  # @method undocumented(string, ratio)",
            "  # @param [String] string",
            "  # @param [Float] ratio",
            "  # @return [Integer]",
            "  # @scope class",
            "  attach_function :undocumented, :my_undocumented, [:string, :double], :int",
        ]
    )


def test_variadic_and_unknown_param():
    logf = artifact(build("function"), "my_logf")
    assert logf.variadic
    rendered = h2ffi.render_artifact(logf, ["my_"])
    assert "  # @param [String] fmt Format string. extra: Not a parameter." in rendered
    assert rendered.endswith(
        "attach_function :logf, :my_logf, [:int, :string, :varargs], :void"
    )


def test_pointer_labels():
    state = build("function")
    reduce = artifact(state, "my_reduce")
    assert reduce.return_type == h2ffi.Pointer()
    assert reduce.return_label == "FFI::Pointer of Ratio"
    assert [p.label for p in reduce.parameters] == ["FFI::Pointer of Ratio", "Ratio"]


def test_anonymous_pointee():
    anon = artifact(build("anonymous"), "my_anon")
    assert [p.label for p in anon.parameters] == ["FFI::Pointer"]
    rendered = h2ffi.render_artifact(anon, ["my_"])
    assert "  # @method anon(pointer)" in rendered
    assert "  # @param [FFI::Pointer] pointer" in rendered


def test_header_matches_whole_file_name():
    assert h2ffi.is_header("/usr/include/inc/io.h", "io.h")
    assert h2ffi.is_header("/usr/include/inc/io.h", "inc/io.h")
    assert h2ffi.is_header("io.h", "./io.h")
    assert not h2ffi.is_header("/usr/include/stdio.h", "io.h")
    assert not h2ffi.is_header("/usr/include/radio.h", "io.h")


def test_scope_excludes_suffix_named_includes():
    state = build("io", headers=["io.h"], cflags=["-I", str(TESTS)])
    assert [a.name for a in state.artifacts] == ["my_first", "my_second"]
    # Declarations of `other/radio.h` leave the comment cursor alone
    assert "Doc for first." in artifact(state, "my_first").comment
    assert artifact(state, "my_second").comment == ""


def test_scope_directory_is_normalized():
    state = build("inc/a", headers=["inc/a.h"], cflags=["-I", str(TESTS)])
    assert [a.name for a in state.artifacts] == ["my_b", "my_a"]


def test_diagnostics_do_not_abort(capsys):
    state = build("warning")
    assert [a.name for a in state.artifacts] == ["my_ping"]
    err = capsys.readouterr().err
    assert "clang diagnostic:" in err
    assert "experimental" in err


def test_function_definition_skipped(capsys):
    state = build("function")
    assert "my_twice" not in [a.name for a in state.artifacts]
    assert "`my_twice` is a function definition" in capsys.readouterr().err


def test_unsupported_type_aborts():
    with pytest.raises(h2ffi.UnsupportedType):
        h2ffi.h2ffi(make_config("unsupported"))


def test_yaml_format():
    d = yaml.safe_load(h2ffi.h2ffi(make_config("struct", format="yaml")))
    assert d["module"] == "Test"
    assert [s["name"] for s in d["structs"]] == ["my_Point", "my_Shape"]
    assert d["structs"][0]["members"][1] == {
        "name": "y",
        "type": {"kind": "int", "name": "ulong", "signed": False, "width": 64},
    }
    assert d["callbacks"][1]["type"] == {"kind": "struct", "name": "my_Point"}
    assert d["enums"] == [
        {"name": "shape_t", "members": [{"name": "SHAPE_CIRCLE"}, {"name": "SHAPE_SQUARE"}]}
    ]


def test_missing_configuration():
    with pytest.raises(h2ffi.MissingConfiguration) as e:
        h2ffi.h2ffi(h2ffi.Config(module="M", headers=["foo.h"]))
    assert e.value.field == "library"


# Main


def test_main_version():
    with pytest.raises(SystemExit) as e:
        h2ffi.main(["--version"])
    assert e.value.code == 0


def test_main_missing_module(capsys):
    with pytest.raises(SystemExit) as e:
        h2ffi.main(["-l", "enums", str(TESTS / "enum.h")])
    assert e.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "h2ffi: error: No module given." in captured.err


def test_main_unsupported_type(capsys):
    with pytest.raises(SystemExit) as e:
        h2ffi.main(["-m", "M", "-l", "m", str(TESTS / "unsupported.h")])
    assert e.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "No translation for values of type" in captured.err


def test_main_ref(capsys):
    out = run_main(
        capsys,
        ["-m", "Shapes", "-l", "shapes", "-p", "my_", str(TESTS / "struct.h")],
    ).out
    with open(TESTS / "struct.rb", "r") as f:
        assert out == f.read()


def test_main_arguments_and_grouping(capsys):
    header = str(TESTS / "define.h")
    argv = ["-m", "M", "-l", "m", "-p", "my_", header]

    out1 = run_main(capsys, ["-Wc,-DMY_WIDTH=8"] + argv).out
    out2 = run_main(
        capsys, ["-Wc,--startgroup", "-DMY_WIDTH=8", "-Wc,--endgroup"] + argv
    ).out

    assert out1 == out2
    assert "    layout :values, [:int, 8]\n" in out1


def test_main_config_file(capsys, tmp_path):
    config = tmp_path / "h2ffi.yml"
    with open(config, "w") as f:
        yaml.safe_dump(
            {
                "module": "Shapes",
                "library": "shapes",
                "headers": [str(TESTS / "struct.h")],
                "prefixes": ["my_"],
            },
            f,
        )
    output = tmp_path / "shapes.rb"

    captured = run_main(capsys, ["--config", str(config), "-o", str(output)])
    assert captured.out == ""
    assert f"h2ffi: {output}" in captured.err

    with open(TESTS / "struct.rb", "r") as f_ref, open(output, "r") as f_out:
        assert f_out.read() == f_ref.read()


def test_main_config_unknown_key(capsys, tmp_path):
    config = tmp_path / "h2ffi.yml"
    config.write_text("module: M\nlibrarie: m\n")
    with pytest.raises(SystemExit) as e:
        h2ffi.main(["--config", str(config)])
    assert e.value.code == 1
    assert "librarie" in capsys.readouterr().err


def test_main_config_scalar_list(capsys, tmp_path):
    config = tmp_path / "h2ffi.yml"
    config.write_text("module: M\nlibrary: m\nprefixes: clang_\n")
    with pytest.raises(SystemExit) as e:
        h2ffi.main(["--config", str(config), str(TESTS / "struct.h")])
    assert e.value.code == 1
    assert "`prefixes` must be a list" in capsys.readouterr().err


def test_main_config_missing_file(capsys, tmp_path):
    with pytest.raises(SystemExit) as e:
        h2ffi.main(["--config", str(tmp_path / "missing.yml")])
    assert e.value.code == 1
    assert "h2ffi: error: Cannot read" in capsys.readouterr().err
