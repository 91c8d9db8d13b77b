# tests/test_renderer.py
from __future__ import annotations

import shlex
import sys

import pytest

from jobs.errors import RenderError
from services.renderer import CommandRenderer, parse_progress_line

FAKE_RENDER = """
import sys
out = sys.argv[1]
print("Bundling 50%", flush=True)
print("Bundling 50%", flush=True)
print("Getting composition", flush=True)
print("Rendered 30/60", flush=True)
print("Rendered 60/60", flush=True)
open(out, "wb").write(b"video")
"""

FAILING_RENDER = """
import sys
print("Bundling 100%")
print("Error: composition Weather not found")
sys.exit(3)
"""


@pytest.mark.parametrize(
    "line, expected",
    [
        ("Bundling 42%", ("bundling", 0.42)),
        ("Bundling code...", ("bundling", 0.0)),
        ("Getting composition Weather", ("composition", 0.0)),
        ("Encoded 75%", ("rendering", 0.75)),
        ("Rendered 15/60, time remaining: 3s", ("rendering", 0.25)),
        ("Starting Chrome", None),
    ],
)
def test_parse_progress_line(line, expected):
    assert parse_progress_line(line) == expected


def test_build_args_substitutes_placeholders(tmp_path):
    renderer = CommandRenderer("npx remotion render Weather {output} --props={props}")
    args = renderer.build_args({"city": "Lima"}, tmp_path / "out.mp4")
    assert args[-2] == str(tmp_path / "out.mp4")
    assert args[-1] == '--props={"city":"Lima"}'


def _script_renderer(tmp_path, source: str) -> CommandRenderer:
    script = tmp_path / "fake_render.py"
    script.write_text(source)
    return CommandRenderer(shlex.join([sys.executable, str(script), "{output}"]), tmp_path)


@pytest.mark.asyncio
async def test_command_renderer_reports_stages(tmp_path):
    stages = []

    async def on_stage(stage, fraction):
        stages.append((stage, fraction))

    output = tmp_path / "out" / "video.mp4"
    result = await _script_renderer(tmp_path, FAKE_RENDER).render({}, output, on_stage)

    assert result == output
    assert output.read_bytes() == b"video"
    assert stages == [
        ("bundling", 0.5),
        ("composition", 0.0),
        ("rendering", 0.5),
        ("rendering", 1.0),
    ]


@pytest.mark.asyncio
async def test_nonzero_exit_raises_render_error(tmp_path):
    async def on_stage(stage, fraction):
        pass

    with pytest.raises(RenderError) as exc_info:
        await _script_renderer(tmp_path, FAILING_RENDER).render({}, tmp_path / "v.mp4", on_stage)

    assert "code 3" in str(exc_info.value)
    assert "composition Weather not found" in str(exc_info.value)
