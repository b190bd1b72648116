"""Tests for the wizardflow command line."""

import json
import logging
import textwrap

import pytest

from wizardflow.cli import load_wizard, main
from wizardflow.flow.executor import Wizard

RESPONSE = (
    "Here you go:\n"
    "<response>\n"
    '  <title type="string">Tide pools\n'
    '  <tags type="array">["marine", "coast",]\n'
    '  <depth type="number">3.5\n'
    "</response>\n"
)

WIZARD_MODULE = textwrap.dedent(
    """
    from wizardflow import Wizard, WizardConfig


    def greet(result, context, actions):
        actions.update_context({"greeting": f"hello {context['name']}"})


    def explode(result, context, actions):
        raise RuntimeError("kaboom")


    def build():
        wizard = Wizard("cli-demo", config=WizardConfig(model="test-model", log_to_file=False))
        wizard.add_compute_step("greet", greet)
        return wizard


    def build_failing():
        config = WizardConfig(model="test-model", log_to_file=False, max_retries=0)
        wizard = Wizard("cli-fail", config=config)
        wizard.add_compute_step("explode", explode)
        return wizard


    not_a_wizard = 42
    """
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def wizard_module(tmp_path, monkeypatch):
    (tmp_path / "cli_demo_wizards.py").write_text(WIZARD_MODULE, encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.syspath_prepend(str(tmp_path))
    return "cli_demo_wizards"


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------


class TestParseCommand:
    def test_parse_file(self, tmp_path, capsys):
        path = tmp_path / "response.txt"
        path.write_text(RESPONSE, encoding="utf-8")

        assert main(["parse", str(path)]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output == {"title": "Tide pools", "tags": ["marine", "coast"], "depth": 3.5}

    def test_parse_streaming_matches_one_shot(self, tmp_path, capsys):
        path = tmp_path / "response.txt"
        path.write_text(RESPONSE, encoding="utf-8")

        assert main(["parse", str(path), "--chunk-size", "3"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["tags"] == ["marine", "coast"]
        assert output["depth"] == 3.5

    def test_parse_reports_field_warnings(self, tmp_path, capsys):
        path = tmp_path / "response.txt"
        path.write_text(
            '<response><n type="number">many<ok type="string">yes</response>', encoding="utf-8"
        )

        assert main(["parse", str(path), "--chunk-size", "5"]) == 0

        captured = capsys.readouterr()
        assert json.loads(captured.out) == {"ok": "yes"}
        assert "warning: n:" in captured.err

    def test_parse_missing_container(self, tmp_path, capsys):
        path = tmp_path / "response.txt"
        path.write_text('<title type="string">No container', encoding="utf-8")

        assert main(["parse", str(path)]) == 1
        assert "missing <response>" in capsys.readouterr().err

    def test_parse_missing_file(self, tmp_path, capsys):
        assert main(["parse", str(tmp_path / "nope.txt")]) == 1
        assert "cannot read" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRunCommand:
    def test_load_wizard_from_factory(self, wizard_module):
        wizard = load_wizard(f"{wizard_module}:build")
        assert isinstance(wizard, Wizard)
        assert [s.id for s in wizard.steps] == ["greet"]

    def test_load_wizard_rejects_bad_targets(self, wizard_module):
        with pytest.raises(ValueError):
            load_wizard(wizard_module)
        with pytest.raises(TypeError):
            load_wizard(f"{wizard_module}:not_a_wizard")

    def test_run_prints_summary(self, wizard_module, capsys):
        code = main(
            [
                "run",
                f"{wizard_module}:build",
                "--context",
                '{"name": "Ada"}',
                "--show-context",
                "--log-level",
                "WARNING",
            ]
        )

        assert code == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["success"] is True
        assert summary["path"] == ["greet"]
        assert summary["context"]["greeting"] == "hello Ada"

    def test_run_failing_wizard_exits_nonzero(self, wizard_module, capsys):
        code = main(["run", f"{wizard_module}:build_failing", "--log-level", "ERROR"])

        assert code == 1
        summary = json.loads(capsys.readouterr().out)
        assert summary["success"] is False
        assert "kaboom" in summary["error"]
        assert "context" not in summary

    def test_run_rejects_non_object_context(self, wizard_module, capsys):
        assert main(["run", f"{wizard_module}:build", "--context", "[1, 2]"]) == 1
        assert "JSON object" in capsys.readouterr().err

    def test_run_unknown_module(self, wizard_module, capsys):
        assert main(["run", "no_such_module_here:build"]) == 1
        assert "cannot load wizard" in capsys.readouterr().err
