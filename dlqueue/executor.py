"""
Download executor backed by the yt-dlp command line tool.

The process runs in its own session so that cancellation can signal the
whole tree (yt-dlp spawns ffmpeg for merges).
"""
import logging
import os
import re
import signal
import subprocess
from typing import Optional, Protocol, Tuple

from .cancellation import CancellationToken
from .errors import DownloadError

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "bestvideo+bestaudio/best"
DEFAULT_OUTPUT_TEMPLATE = "%(title)s-%(id)s.%(ext)s"

# most recent match wins, so stdout is scanned from the end.
# "Deleting original file" lines name removed fragments and are not matched.
OUTPUT_PATTERNS = (
    re.compile(r'^\[Merger\] Merging formats into "?(.+?)"?$'),
    re.compile(r"^\[\w+\] Destination: (.+)$"),
    re.compile(r"^\[download\] (.+) has already been downloaded"),
)

PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


class DownloadExecutor(Protocol):
    def download(self, url: str, output_dir: str, token: Optional[CancellationToken] = None) -> str:
        ...


def find_output_path(stdout: str, output_dir: str) -> Optional[str]:
    """
    Work out which file yt-dlp produced from its stdout. Falls back to the most
    recently modified finished file under `output_dir`.
    """
    lines = [line.strip() for line in (stdout or "").splitlines() if line.strip()]
    for line in reversed(lines):
        for pattern in OUTPUT_PATTERNS:
            m = pattern.search(line)
            if m:
                path = m.group(1).strip()
                if not os.path.isabs(path):
                    path = os.path.join(output_dir, path)
                return path

    newest, newest_mtime = None, None
    try:
        for root, _dirs, files in os.walk(output_dir):
            for name in files:
                if name.endswith(PARTIAL_SUFFIXES):
                    continue
                path = os.path.join(root, name)
                mtime = os.path.getmtime(path)
                if newest_mtime is None or mtime > newest_mtime:
                    newest, newest_mtime = path, mtime
    except OSError as e:
        logger.debug("Could not scan %s for output files: %s", output_dir, e)
    return newest


class YtDlpExecutor:
    def __init__(
        self,
        executable: str = "yt-dlp",
        format: str = DEFAULT_FORMAT,
        output_template: str = DEFAULT_OUTPUT_TEMPLATE,
        config_file: Optional[str] = None,
        grace_seconds: float = 10.0,
        poll_seconds: float = 0.5,
    ):
        self.executable = executable
        self.format = format
        self.output_template = output_template
        self.config_file = config_file
        self.grace_seconds = grace_seconds
        self.poll_seconds = poll_seconds

    def build_args(self, url: str, output_dir: str):
        args = [self.executable, "--no-playlist", "--newline"]
        if self.config_file:
            args += ["--config-location", self.config_file]
        if self.format:
            args += ["-f", self.format]
        args += ["-o", os.path.join(output_dir, self.output_template), "--", url]
        return args

    def download(self, url: str, output_dir: str, token: Optional[CancellationToken] = None) -> str:
        if not url or not url.strip():
            raise ValueError("url cannot be empty")
        if not output_dir or not output_dir.strip():
            raise ValueError("output_dir cannot be empty")

        output_dir = os.path.abspath(output_dir)
        os.makedirs(output_dir, exist_ok=True)
        if token is not None:
            token.raise_if_cancelled()

        args = self.build_args(url, output_dir)
        logger.debug("Running %s", " ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=output_dir,
                start_new_session=(os.name != "nt"),
            )
        except FileNotFoundError:
            raise DownloadError(f"yt-dlp executable not found: {self.executable}")
        except OSError as e:
            raise DownloadError(f"Failed to execute yt-dlp: {e}") from e

        stdout, stderr = self._wait(proc, token)

        if proc.returncode != 0:
            message = stderr.strip() or f"yt-dlp exited with code {proc.returncode}"
            raise DownloadError(f"Download failed: {message}")

        path = find_output_path(stdout, output_dir)
        if not path:
            raise DownloadError(
                "Download completed but output file path not found.\n"
                f"Output directory: {output_dir}\n"
                f"yt-dlp stdout:\n{stdout}\nyt-dlp stderr:\n{stderr}"
            )
        if not os.path.exists(path):
            if "has already been downloaded" in stdout.lower():
                logger.info("Duplicate request for %s; already downloaded at %s", url, path)
                return path
            raise DownloadError(
                f"Download completed but output file not found: {path}\n"
                f"yt-dlp stdout:\n{stdout}\nyt-dlp stderr:\n{stderr}"
            )
        return path

    def _wait(self, proc: subprocess.Popen, token: Optional[CancellationToken]) -> Tuple[str, str]:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_seconds)
                return stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                if token is not None and token.cancelled:
                    self._terminate(proc)
                    token.raise_if_cancelled()

    def _terminate(self, proc: subprocess.Popen) -> None:
        logger.warning("Stopping yt-dlp (pid %s)", proc.pid)
        self._signal(proc, force=False)
        try:
            proc.communicate(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                "yt-dlp did not exit within %gs; killing process tree", self.grace_seconds
            )
            self._signal(proc, force=True)
            proc.communicate()

    @staticmethod
    def _signal(proc: subprocess.Popen, force: bool) -> None:
        if os.name == "nt":
            proc.kill() if force else proc.terminate()
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            pass

    def version(self) -> Optional[str]:
        try:
            result = subprocess.run(
                [self.executable, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("yt-dlp health check failed: %s", e)
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None
