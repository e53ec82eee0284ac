from __future__ import annotations

import io
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from PIL import Image

from render_mode import main as cli
from render_mode.progress import ConsoleBar

CONFIG_YAML = """
render:
  width: 1920
  height: 1080
  fps: 120
sandbox:
  mode: process
  load_timeout_seconds: 10
transitions:
  settle_seconds: 0.05
  exit_overlap_seconds: 0
capture:
  tiers: [snapshot]
"""


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(cli, "configure_logging", lambda level, log_file=None: None)
    (tmp_path / "config.yaml").write_text(CONFIG_YAML, encoding="utf-8")
    Image.new("RGB", (4, 4), (255, 255, 0)).save(tmp_path / "badge.png")
    return tmp_path


def _run(workspace: Path, script: str) -> int:
    script_path = workspace / "deck.py"
    script_path.write_text(script, encoding="utf-8")
    return cli.main(
        [
            str(script_path),
            "--config", str(workspace / "config.yaml"),
            "--output-dir", str(workspace / "out"),
            "--media", str(workspace / "badge.png"),
            "--width", "40",
            "--height", "30",
            "--sandbox", "thread",
            "--no-progress",
        ]
    )


def test_cli_exports_slides(workspace: Path) -> None:
    code = _run(
        workspace,
        "play_slides([{'init': lambda ctx: ctx.container.create('img', src='media/badge.png', "
        "style={'width': '100%', 'height': '100%'})}])\n",
    )

    assert code == 0
    output = workspace / "out" / "slide_01.png"
    with Image.open(output) as image:
        assert image.size == (40, 30)
        assert image.convert("RGB").getpixel((20, 15)) == (255, 255, 0)


def test_cli_fails_when_a_slide_fails(workspace: Path) -> None:
    code = _run(workspace, "play_slides([{'init': lambda ctx: {}}, {'init': lambda ctx: 1 / 0}])\n")

    assert code == 1
    assert (workspace / "out" / "slide_01.png").exists()
    assert not (workspace / "out" / "slide_02.png").exists()


def test_cli_fails_without_slides(workspace: Path) -> None:
    assert _run(workspace, "print('nothing to show')\n") == 1


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args(["deck.py"])

    assert args.config == "config.yaml"
    assert args.media == []
    assert args.sandbox is None


def test_console_bar_renders_percent_and_message() -> None:
    stream = io.StringIO()
    bar = ConsoleBar(label="deck.py", width=10, stream=stream)

    bar.update(50, "Rendered slide 1 of 2")
    bar.update(120)
    bar.finish()

    output = stream.getvalue()
    assert "[█████·····]  50% " in output
    assert "Rendered slide 1 of 2" in output
    assert "[██████████] 100%" in output
    assert output.endswith("\n")
