# services/renderer.py
"""
Video rendering through an external command.

The command template is split with shlex and each argument formatted
with `{output}` (target file) and `{props}` (JSON input props). Output
lines are scanned for progress: bundling and composition markers, and
either `NN%` or `rendered N/M` frame counters for the render itself.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from jobs.errors import RenderError

logger = logging.getLogger(__name__)

# (stage, fraction within the stage, 0..1)
StageCallback = Callable[[str, float], Awaitable[None]]

PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
FRAMES_RE = re.compile(r"(\d+)\s*/\s*(\d+)")
TAIL_LINES = 20


class Renderer(Protocol):
    async def render(self, props: dict, output_path: Path, on_stage: StageCallback) -> Path: ...


def parse_progress_line(line: str) -> tuple[str, float] | None:
    """Return (stage, fraction) for a renderer output line, or None."""
    lowered = line.lower()
    if "bundl" in lowered:
        match = PERCENT_RE.search(line)
        return "bundling", (min(float(match.group(1)), 100.0) / 100.0 if match else 0.0)
    if "composition" in lowered:
        return "composition", 0.0

    match = PERCENT_RE.search(line)
    if match:
        return "rendering", min(float(match.group(1)), 100.0) / 100.0
    if "render" in lowered:
        frames = FRAMES_RE.search(line)
        if frames and int(frames.group(2)) > 0:
            return "rendering", min(int(frames.group(1)) / int(frames.group(2)), 1.0)
    return None


class CommandRenderer:
    def __init__(self, command: str, work_dir: str | Path = ".") -> None:
        self.command = command
        self.work_dir = Path(work_dir)

    def build_args(self, props: dict, output_path: Path) -> list[str]:
        props_json = json.dumps(props, separators=(",", ":"))
        return [
            part.replace("{output}", str(output_path)).replace("{props}", props_json)
            for part in shlex.split(self.command)
        ]

    async def render(self, props: dict, output_path: Path, on_stage: StageCallback) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        args = self.build_args(props, output_path)
        logger.info("Render: starting %s -> %s", args[0], output_path.name)

        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(self.work_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        tail: deque[str] = deque(maxlen=TAIL_LINES)
        last: tuple[str, int] | None = None
        try:
            assert proc.stdout is not None
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                tail.append(line)
                parsed = parse_progress_line(line)
                if parsed is None:
                    continue
                stage, fraction = parsed
                key = (stage, int(fraction * 100))
                if key == last:
                    continue
                last = key
                await on_stage(stage, fraction)
            returncode = await proc.wait()
        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
                logger.warning("Render: killed renderer for %s", output_path.name)
            raise

        if returncode != 0:
            detail = tail[-1] if tail else "no output"
            raise RenderError(f"Renderer exited with code {returncode}: {detail}")
        if not output_path.exists():
            raise RenderError(f"Renderer produced no output at {output_path}")

        logger.info("Render: finished %s (%d bytes)", output_path.name, output_path.stat().st_size)
        return output_path
