"""
Combines separately downloaded video and audio tracks into one file.
"""

import asyncio
import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .integrity import FileIntegrityChecker

log = logging.getLogger(__name__)


class MergeStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class MergeResult:
    status: MergeStatus
    output: Path
    diagnostics: str = ""

    @property
    def ok(self) -> bool:
        return self.status is MergeStatus.COMPLETED


class Merger:
    """
    Runs ffmpeg (stream copy, no re-encode) to mux a video and an audio track.
    A single progressive input is moved into place without any external tool.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", verify_container: bool = False):
        self.ffmpeg_path = ffmpeg_path
        self.verify_container = verify_container

    def build_command(self, video: Path, audio: Path, output: Path) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-loglevel",
            "error",
            "-i",
            str(video),
            "-i",
            str(audio),
            "-c",
            "copy",
            str(output),
        ]

    async def merge(
        self, video: Path, audio: Optional[Path], output: Path
    ) -> MergeResult:
        """
        Produces `output` from the given inputs. Intermediates are removed only
        after the output has been confirmed valid.
        """
        output.parent.mkdir(parents=True, exist_ok=True)

        if audio is None:
            try:
                os.replace(video, output)
            except OSError as e:
                return MergeResult(MergeStatus.FAILED, output, f"Move failed: {e}")
            log.debug(f"Moved single-track input into place: {output.name}")
            return MergeResult(MergeStatus.COMPLETED, output)

        executable = shutil.which(self.ffmpeg_path)
        if executable is None:
            return MergeResult(
                MergeStatus.FAILED,
                output,
                f"'{self.ffmpeg_path}' was not found. Install ffmpeg or set ffmpeg_path.",
            )

        command = self.build_command(video, audio, output)
        command[0] = executable
        log.debug(f"Running: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await process.communicate()
            except asyncio.CancelledError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                raise
        except OSError as e:
            return MergeResult(MergeStatus.FAILED, output, f"Could not start ffmpeg: {e}")

        diagnostics = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            return MergeResult(
                MergeStatus.FAILED,
                output,
                f"ffmpeg exited with status {process.returncode}: {diagnostics}",
            )

        if not FileIntegrityChecker.check_nonempty(output):
            return MergeResult(
                MergeStatus.FAILED, output, f"ffmpeg produced no output. {diagnostics}"
            )
        if self.verify_container and not await asyncio.to_thread(
            FileIntegrityChecker.check_mp4, output
        ):
            return MergeResult(
                MergeStatus.FAILED, output, "Merged file failed the container check."
            )

        for path in (video, audio):
            path.unlink(missing_ok=True)
        return MergeResult(MergeStatus.COMPLETED, output, diagnostics)
