"""External transcoder runner with timeout enforcement and process cleanup.

Runs cwebp (images) and ffmpeg (videos) as child processes. A missing
binary, a timeout or a non-zero exit is reported through ToolResult rather
than raised, so callers can fall back to copying the original file.

Key Features:
- Process isolation with subprocess.Popen
- Global timeout enforcement
- Process tree cleanup via psutil (SIGTERM, grace period, SIGKILL)
- Error classification from stderr
"""

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)


class ToolErrorType(Enum):
    """Why a transcoder run did not succeed."""
    MISSING = "missing"         # Executable not installed / not found
    TIMEOUT = "timeout"         # Global timeout exceeded, process killed
    PERMANENT = "permanent"     # Invalid input, unsupported codec
    TRANSIENT = "transient"     # I/O trouble, unknown failure


@dataclass
class ToolResult:
    """Result of one transcoder execution."""
    success: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0
    error_type: Optional[ToolErrorType] = None

    @property
    def message(self) -> str:
        if self.success:
            return "ok"
        detail = (self.stderr or "").strip()[:500]
        kind = self.error_type.value if self.error_type else "error"
        return f"{kind} (exit {self.returncode}): {detail}" if detail else f"{kind} (exit {self.returncode})"


class ToolRunner:
    """cwebp/ffmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = ToolRunner(global_timeout_s=600)
        >>> result = runner.convert_to_webp("in.png", "out.webp", quality=82)
        >>> if not result.success:
        ...     print(result.error_type, result.message)
    """

    def __init__(
        self,
        cwebp_path: Optional[str] = None,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: int = 1800,
        kill_grace_period_s: int = 5,
    ):
        """Initialize runner.

        Args:
            cwebp_path: cwebp executable (None = search PATH)
            ffmpeg_path: ffmpeg executable (None = imageio-ffmpeg binary)
            global_timeout_s: Maximum duration of any single run
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
        """
        self.cwebp_path = cwebp_path
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.kill_grace_period_s = kill_grace_period_s

    def convert_to_webp(self, input_path: str, output_path: str, quality: int = 82) -> ToolResult:
        """Re-encode an image as WEBP at a fixed quality."""
        exe = self._get_cwebp_exe()
        if exe is None:
            return ToolResult(success=False, returncode=-1, error_type=ToolErrorType.MISSING)

        cmd = [exe, "-quiet", "-q", str(quality), input_path, "-o", output_path]
        return self._run_tool(cmd)

    def transcode_video(
        self,
        input_path: str,
        output_path: str,
        crf: int = 28,
        preset: str = "veryfast",
        audio_bitrate: str = "96k",
    ) -> ToolResult:
        """Transcode to H.264/AAC MP4 with the moov atom up front for streaming.

        Args:
            input_path: Source video
            output_path: Target .mp4 path
            crf: Constant Rate Factor (0-51, lower = better quality)
            preset: x264 encoding preset
            audio_bitrate: AAC bitrate
        """
        exe = self._get_ffmpeg_exe()
        if exe is None:
            return ToolResult(success=False, returncode=-1, error_type=ToolErrorType.MISSING)

        cmd = [
            exe,
            "-y",
            "-i", input_path,
            "-movflags", "+faststart",
            "-vcodec", "libx264",
            "-preset", preset,
            "-crf", str(crf),
            "-acodec", "aac",
            "-b:a", audio_bitrate,
            output_path,
        ]
        return self._run_tool(cmd)

    def _run_tool(self, cmd: List[str]) -> ToolResult:
        """Execute a transcoder with timeout enforcement."""
        start_time = time.time()

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.warning("Cannot start %s: %s", cmd[0], e)
            return ToolResult(
                success=False,
                returncode=-1,
                stderr=str(e),
                duration_s=time.time() - start_time,
                error_type=ToolErrorType.MISSING,
            )

        try:
            stdout, stderr = process.communicate(timeout=self.global_timeout_s)
            returncode = process.returncode
            timed_out = False
        except subprocess.TimeoutExpired:
            logger.warning("%s exceeded %ss, killing", cmd[0], self.global_timeout_s)
            stdout, stderr = self._kill_process_tree(process)
            returncode = -1
            timed_out = True
        except BaseException:
            # Unexpected error - ensure cleanup
            self._kill_process_tree(process)
            raise

        error_type = None
        if timed_out:
            error_type = ToolErrorType.TIMEOUT
        elif returncode != 0:
            error_type = self._classify_error(stderr or "")

        return ToolResult(
            success=(returncode == 0),
            returncode=returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_s=time.time() - start_time,
            error_type=error_type,
        )

    def _kill_process_tree(self, process: subprocess.Popen) -> Tuple[str, str]:
        """Terminate the process and its children, then collect output.

        Kill sequence:
        1. SIGTERM to the process and all children
        2. Wait grace period
        3. SIGKILL survivors
        """
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            stdout, stderr = process.communicate(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            return "", ""
        return stdout or "", stderr or ""

    def _classify_error(self, stderr: str) -> ToolErrorType:
        """Classify a failed run from its stderr output."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported",
            "could not decode",
            "cannot open input file",
            "moov atom not found",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return ToolErrorType.PERMANENT

        return ToolErrorType.TRANSIENT

    def _get_cwebp_exe(self) -> Optional[str]:
        return self.cwebp_path or shutil.which("cwebp")

    def _get_ffmpeg_exe(self) -> Optional[str]:
        if self.ffmpeg_path:
            return self.ffmpeg_path
        try:
            return imageio_ffmpeg.get_ffmpeg_exe()
        except RuntimeError as e:
            logger.warning("ffmpeg not available: %s", e)
            return None
