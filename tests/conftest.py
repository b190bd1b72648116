"""Shared fixtures for wizardflow tests."""

import pytest

from wizardflow.config import WizardConfig
from wizardflow.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the configuration file at an empty temp path so ~/.wizardflow never leaks in."""
    monkeypatch.setenv("WIZARDFLOW_CONFIG", str(tmp_path / "missing-configuration.json"))
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def config(tmp_path):
    return WizardConfig(
        model="test-model",
        max_retries=3,
        log_dir=str(tmp_path / "logs"),
        log_to_file=False,
    )


def tagged(**fields) -> str:
    """Build a <response> document from keyword fields, typing each by its Python value."""
    parts = []
    for name, value in fields.items():
        if isinstance(value, bool):
            parts.append(f'<{name} type="boolean">{"true" if value else "false"}')
        elif isinstance(value, int | float):
            parts.append(f'<{name} type="number">{value}')
        elif isinstance(value, list):
            items = ", ".join(f'"{v}"' for v in value)
            parts.append(f'<{name} type="array">[{items}]')
        else:
            parts.append(f'<{name} type="string">{value}')
    return "<response>\n" + "\n".join(parts) + "\n</response>"
