import json
import textwrap

from preexec import cli

SOURCE = textwrap.dedent(
    """
    @counter = global i32 0, align 4
    @limit = global i32 0, align 4
    define internal void @init_counter() {
    entry:
      store i32 10, ptr @counter, align 4
      ret void
    }
    define internal void @init_limit() {
    entry:
      call void @read_env()
      store i32 3, ptr @limit, align 4
      ret void
    }
    define internal void @init_late() {
    entry:
      store i32 1, ptr @counter, align 4
      ret void
    }
    declare void @read_env()
    @llvm.global_ctors = appending global [3 x { i32, ptr, ptr }] [{ i32, ptr, ptr } { i32 100, ptr @init_counter, ptr null }, { i32, ptr, ptr } { i32 200, ptr @init_limit, ptr null }, { i32, ptr, ptr } { i32 300, ptr @init_late, ptr null }]
    """
).lstrip()


def _write_source(tmp_path, text=SOURCE):
    path = tmp_path / "in.ll"
    path.write_text(text, encoding="utf-8")
    return path


def test_cli_rewrites_module(tmp_path, capsys):
    src = _write_source(tmp_path)
    out = tmp_path / "out.ll"
    report = tmp_path / "report.json"
    rc = cli.main([str(src), "-o", str(out), "--report", str(report)])
    assert rc == 0
    assert f"Wrote {out}" in capsys.readouterr().out
    text = out.read_text(encoding="utf-8")
    assert "@counter = global i32 10, align 4" in text
    assert "@limit = global i32 0, align 4" in text
    assert "ptr @init_limit" in text and "ptr @init_late" in text
    assert "ptr @init_counter, ptr null" not in text
    payload = json.loads(report.read_text(encoding="utf-8"))
    assert [c["status"] for c in payload["constructors"]] == ["elided", "preserved", "skipped"]
    assert payload["modified_globals"] == ["counter"]


def test_cli_keep_going(tmp_path):
    src = _write_source(tmp_path)
    out = tmp_path / "out.ll"
    assert cli.main([str(src), "-o", str(out), "--keep-going"]) == 0
    text = out.read_text(encoding="utf-8")
    assert "@counter = global i32 1, align 4" in text
    assert "[1 x { i32, ptr, ptr }]" in text


def test_cli_report_to_stdout(tmp_path, capsys):
    src = _write_source(tmp_path)
    rc = cli.main([str(src), "-o", str(tmp_path / "out.ll"), "--report", "-"])
    assert rc == 0
    stdout = capsys.readouterr().out
    body, _, tail = stdout.partition("Wrote")
    assert json.loads(body)["elided"] == 1
    assert tail.strip().endswith("out.ll")


def test_cli_parse_error(tmp_path, capsys):
    src = _write_source(tmp_path, "@g = global i32 %x\n")
    out = tmp_path / "out.ll"
    assert cli.main([str(src), "-o", str(out)]) == 1
    assert "error:" in capsys.readouterr().err
    assert not out.exists()


def test_cli_missing_input(tmp_path, capsys):
    assert cli.main([str(tmp_path / "absent.ll"), "-o", str(tmp_path / "out.ll")]) == 1
    assert "cannot read" in capsys.readouterr().err


def test_build_arg_parser_defaults(monkeypatch):
    monkeypatch.delenv("PREEXEC_LOG", raising=False)
    args = cli.build_arg_parser().parse_args(["in.ll", "-o", "out.ll", "--step-limit", "50", "--heap-prefix", "h"])
    config = cli._config_from_args(args)
    assert config.step_limit == 50
    assert config.heap_global_prefix == "h"
    assert config.restricted_address_space
    assert config.stop_at_first_failure
    assert args.log_level == "WARNING"
