from __future__ import annotations

from pathlib import Path

import allure
import pytest

from coding_engines.engines.cli_template import CliTemplateEngine, render_command_template
from coding_engines.events import RecordingSink
from coding_engines.metrics import MetricsCollector
from coding_engines.models import EventKind, ProcessOptions

pytestmark = [
    allure.epic("Coding Engines"),
    allure.feature("Agent Command Rendering"),
]


def test_render_quotes_placeholder_values() -> None:
    argv = render_command_template(
        "runner --model {model} --prompt {prompt}",
        model="gpt-5-codex",
        prompt="hello 'world'",
        prompt_file=Path("/tmp/p.txt"),
    )

    assert argv == ["runner", "--model", "gpt-5-codex", "--prompt", "hello 'world'"]


def test_render_supports_prompt_file_only() -> None:
    argv = render_command_template(
        "agent --prompt-file {prompt_file}",
        model="m",
        prompt="ignored",
        prompt_file=Path("/tmp/dir with space/p.txt"),
    )

    assert argv == ["agent", "--prompt-file", "/tmp/dir with space/p.txt"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --model {model}", "must include"),
        ("agent {prompt} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_render_rejects_unusable_templates(template: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        render_command_template(template, model="m", prompt="p", prompt_file=Path("p.txt"))


def test_engine_rejects_bad_template_at_construction() -> None:
    with pytest.raises(ValueError, match="must include"):
        CliTemplateEngine("agent --model {model}")


def test_apply_changes_runs_echo_agent_through_prompt_file(
    repo: Path,
    collector: MetricsCollector,
    echo_template: str,
) -> None:
    sink = RecordingSink()
    engine = CliTemplateEngine(
        f"{echo_template} --file app/main.py",
        ProcessOptions(model="local"),
        metrics_collector=collector,
        sinks=[sink],
    )

    result = engine.apply_changes("Tidy imports", repo)

    assert result.ok, result.error
    summary = result.value
    assert summary is not None
    assert summary.paths == ["app/main.py"]
    assert "+new line: Tidy imports" in summary.diff
    assert sink.events[-1].kind == EventKind.COMPLETED
    assert engine.get_supported_models() == ["local"]
    assert collector.aggregate("cli.requests.success.count", "count") == 1
