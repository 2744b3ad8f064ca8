"""External-process flashing backends.

This module handles:
- Launching a flashing tool with one flag per partition
- Multiplexing the tool's stdout and stderr line by line under a timeout
- Reconstructing progress from percentage-shaped stdout lines
- Flagging permission failures on stderr as escalation triggers
- Staging non-file sources to disk once, so a retried invocation reuses them

Two tools are supported. heimdall takes one flag per partition and keeps a
protocol session open across invocations with --resume. odin4 takes one flag
per firmware slot, each naming a tar archive, plus -d to select the device.

Credentials never appear on a command line or in a log: an elevated
invocation receives the password on stdin only.
"""

from __future__ import annotations

import logging
import os
import re
import selectors
import shlex
import shutil
import subprocess
import tarfile
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from aesir.backends.base import (
    FlashBackend,
    OutputCallback,
    ProgressCallback,
    ProgressEvent,
)
from aesir.backends.native import STREAM_ERRORS
from aesir.errors import (
    BackendLaunchError,
    DeviceIOError,
    FirmwareReadError,
    PermissionDeniedError,
)
from aesir.types import BackendKind, DeviceCandidate, FirmwareSlot, ProgressPhase

if TYPE_CHECKING:
    from aesir.firmware.models import FlashSource

logger = logging.getLogger(__name__)

# Ordered; the first pattern yielding a value in 0..100 wins
PROGRESS_PATTERNS = [
    re.compile(r"^\s*(\d{1,3})\s*%\s*$"),
    re.compile(r"progress:\s*(\d{1,3})\s*%", re.IGNORECASE),
    re.compile(r"\[\s*(\d{1,3})\s*%\s*\]"),
    re.compile(r"^\s*(\d{1,3})\s*%\s+-\s+"),
    re.compile(r"(?:uploading|writing|flashing)\b.*?(\d{1,3})\s*%", re.IGNORECASE),
]

PERMISSION_PATTERN = re.compile(
    r"permission denied|access denied|operation not permitted"
    r"|insufficient permissions|failed to access device"
    r"|LIBUSB_ERROR_ACCESS|libusb error:?\s*-3",
    re.IGNORECASE,
)

# Tools redraw progress with carriage returns or backspaces
LINE_SPLIT = re.compile(rb"\r\n|\r|\n|\x08+")

READ_SIZE = 64 * 1024
STAGE_BLOCK_SIZE = 1024 * 1024
ERROR_CONTEXT_LINES = 5


def parse_progress(line: str) -> int | None:
    """Extract a percentage from one line of tool output.

    Args:
        line: Output line.

    Returns:
        Percentage in [0, 100], or None when the line is not progress.
    """
    for pattern in PROGRESS_PATTERNS:
        match = pattern.search(line)
        if match:
            value = int(match.group(1))
            if 0 <= value <= 100:
                return value
    return None


def is_permission_error(line: str) -> bool:
    """Check whether a stderr line reports an access-rights failure."""
    return PERMISSION_PATTERN.search(line) is not None


@dataclass
class ProcessResult:
    """Outcome of one external tool invocation.

    Attributes:
        exit_code: Process exit code.
        stdout_lines: Non-progress stdout lines.
        stderr_lines: All stderr lines.
        permission_denied: Whether stderr reported a permission failure.
    """

    exit_code: int
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)
    permission_denied: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def error_text(self) -> str:
        """Last few lines of output, for error messages."""
        lines = self.stderr_lines or self.stdout_lines
        if not lines:
            return f"exit code {self.exit_code}"
        return "; ".join(lines[-ERROR_CONTEXT_LINES:])


class ExternalProcessBackend(FlashBackend):
    """Base class for backends that shell out to a flashing tool."""

    name = "external"
    kind = BackendKind.EXTERNAL
    supports_elevation = True

    def __init__(
        self,
        executable: str,
        *,
        tmp_dir: Path | None = None,
        detect_timeout: float = 30,
        flash_timeout: float = 1800,
        requires_elevation: bool = False,
        on_output: OutputCallback | None = None,
    ) -> None:
        super().__init__(on_output=on_output, requires_elevation=requires_elevation)
        self.executable = executable
        self.tmp_dir = tmp_dir
        self.detect_timeout = detect_timeout
        self.flash_timeout = flash_timeout
        self._workdir: Path | None = None
        self._staged: dict[int, tuple[FlashSource, Path]] = {}

    @property
    def workdir(self) -> Path:
        """Private staging directory, created on first use."""
        if self._workdir is None:
            if self.tmp_dir is not None:
                self.tmp_dir.mkdir(parents=True, exist_ok=True)
            self._workdir = Path(
                tempfile.mkdtemp(prefix=f"aesir-{self.name}-", dir=self.tmp_dir)
            )
        return self._workdir

    def run(
        self,
        args: list[str],
        *,
        timeout: float,
        on_percent: Callable[[int], None] | None = None,
        quiet: bool = False,
    ) -> ProcessResult:
        """Run the tool and consume its output line by line.

        Args:
            args: Arguments after the executable.
            timeout: Seconds before the process is killed.
            on_percent: Receives percentages parsed from stdout.
            quiet: Log stdout at debug level instead of forwarding it.

        Returns:
            ProcessResult of the invocation.

        Raises:
            BackendLaunchError: The executable could not be started.
            DeviceIOError: The process timed out.
        """
        argv = [self.executable, *args]
        payload: bytes | None = None
        if self._elevation is not None:
            argv = self._elevation.wrap(argv)
            payload = self._elevation.stdin_payload()

        logger.debug("Running: %s", shlex.join(argv))
        result = ProcessResult(exit_code=-1)

        def handle_stdout(line: str) -> None:
            percent = parse_progress(line) if on_percent is not None else None
            if percent is not None and on_percent is not None:
                on_percent(percent)
            elif quiet:
                logger.debug("[%s] %s", self.name, line)
                result.stdout_lines.append(line)
            else:
                result.stdout_lines.append(line)
                self.emit_output(line)

        def handle_stderr(line: str) -> None:
            result.stderr_lines.append(line)
            if is_permission_error(line):
                result.permission_denied = True
                logger.warning("[%s] permission failure: %s", self.name, line)
            else:
                logger.warning("[%s] %s", self.name, line)
                if self._on_output is not None:
                    self._on_output(line)

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if payload else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise BackendLaunchError(self.name, str(e)) from e

        with process:
            if payload and process.stdin is not None:
                try:
                    process.stdin.write(payload)
                    process.stdin.close()
                except BrokenPipeError:
                    logger.debug("%s closed stdin before reading it", self.name)
            self._pump(process, handle_stdout, handle_stderr, timeout)
            result.exit_code = process.wait()

        logger.debug("%s exited with code %d", self.name, result.exit_code)
        return result

    def _pump(
        self,
        process: subprocess.Popen[bytes],
        handle_stdout: Callable[[str], None],
        handle_stderr: Callable[[str], None],
        timeout: float,
    ) -> None:
        assert process.stdout is not None and process.stderr is not None
        handlers = {
            process.stdout.fileno(): handle_stdout,
            process.stderr.fileno(): handle_stderr,
        }
        buffers = {fd: b"" for fd in handlers}
        deadline = time.monotonic() + timeout

        def dispatch(fd: int, data: bytes) -> None:
            for raw in LINE_SPLIT.split(data):
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    handlers[fd](line)

        with selectors.DefaultSelector() as selector:
            selector.register(process.stdout, selectors.EVENT_READ)
            selector.register(process.stderr, selectors.EVENT_READ)
            while selector.get_map():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    process.kill()
                    process.wait()
                    raise DeviceIOError(
                        f"{self.name} timed out after {timeout:.0f} seconds"
                    )
                for key, _ in selector.select(timeout=min(remaining, 1.0)):
                    fd = key.fd
                    chunk = os.read(fd, READ_SIZE)
                    if not chunk:
                        selector.unregister(key.fileobj)
                        dispatch(fd, buffers[fd])
                        buffers[fd] = b""
                        continue
                    *complete, buffers[fd] = LINE_SPLIT.split(buffers[fd] + chunk)
                    for raw in complete:
                        dispatch(fd, raw)

    def check(self, result: ProcessResult, action: str) -> None:
        """Turn a failed invocation into the matching error.

        Raises:
            PermissionDeniedError: stderr reported an access failure.
            DeviceIOError: Any other non-zero exit.
        """
        if result.success:
            return
        message = f"{self.name} {action} failed: {result.error_text()}"
        if result.permission_denied:
            raise PermissionDeniedError(message)
        raise DeviceIOError(message)

    def stage(self, source: FlashSource) -> Path:
        """Return a file holding exactly the source's bytes.

        Plain files are used in place. Anything else is spooled to the
        staging directory once; later calls for the same source return the
        staged copy without touching the stream again.
        """
        if source.file_path is not None and not source.compressed:
            return source.file_path
        staged = self._staged.get(id(source))
        if staged is not None:
            return staged[1]

        target = self.workdir / f"{source.partition.name}-{source.name}"
        for suffix in (".lz4", ".xz"):
            if target.name.lower().endswith(suffix):
                target = target.with_name(target.name[: -len(suffix)])
        logger.info("Staging %s to %s", source.name, target)
        try:
            with target.open("wb") as out:
                shutil.copyfileobj(source.stream, out, STAGE_BLOCK_SIZE)
        except STREAM_ERRORS as e:
            target.unlink(missing_ok=True)
            raise FirmwareReadError(source.name, str(e)) from e
        self._staged[id(source)] = (source, target)
        return target

    def release_staged(self, source: FlashSource) -> None:
        """Delete the staged copy of a source, if any."""
        staged = self._staged.pop(id(source), None)
        if staged is None:
            return
        try:
            staged[1].unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Cannot remove staged file %s: %s", staged[1], e)

    def percent_reporter(
        self, source: FlashSource, on_progress: ProgressCallback
    ) -> Callable[[int], None]:
        """Map tool percentages onto ProgressEvents, dropping regressions."""
        last = -1

        def report(percent: int) -> None:
            nonlocal last
            if percent <= last:
                return
            last = percent
            on_progress(
                ProgressEvent(
                    partition=source.partition.name,
                    phase=ProgressPhase.TRANSFER,
                    bytes_sent=source.length * percent // 100,
                    total_bytes=source.length,
                    percent=percent,
                )
            )

        return report

    def disconnect(self) -> None:
        for source, _ in list(self._staged.values()):
            self.release_staged(source)
        if self._workdir is not None:
            try:
                shutil.rmtree(self._workdir)
            except OSError as e:
                logger.warning("Cannot remove %s: %s", self._workdir, e)
            self._workdir = None


class HeimdallBackend(ExternalProcessBackend):
    """Heimdall command-line tool.

    Heimdall opens a fresh protocol session per invocation. Every command
    after the first passes --resume so the device session carries over, and
    --no-reboot keeps the device in download mode until reboot().
    """

    name = "heimdall"

    def __init__(
        self,
        executable: str = "heimdall",
        *,
        tmp_dir: Path | None = None,
        detect_timeout: float = 30,
        flash_timeout: float = 1800,
        requires_elevation: bool = False,
        on_output: OutputCallback | None = None,
    ) -> None:
        super().__init__(
            executable,
            tmp_dir=tmp_dir,
            detect_timeout=detect_timeout,
            flash_timeout=flash_timeout,
            requires_elevation=requires_elevation,
            on_output=on_output,
        )
        self._resume = False

    def _session_flags(self) -> list[str]:
        return ["--resume"] if self._resume else []

    def connect(self, device: DeviceCandidate | None) -> None:
        result = self.run(["detect"], timeout=self.detect_timeout, quiet=True)
        if result.permission_denied:
            self.check(result, "detect")
        if not result.success:
            raise BackendLaunchError(self.name, result.error_text())
        logger.info(
            "Heimdall detected %s",
            device.device_id if device else "a download-mode device",
        )

    def begin_session(self) -> None:
        # The session opens implicitly with the first device command.
        logger.debug("Heimdall session opens on first command")

    def dump_pit(self) -> bytes:
        output = self.workdir / "device.pit"
        args = ["download-pit", "--output", str(output), "--no-reboot"]
        result = self.run(
            args + self._session_flags(), timeout=self.detect_timeout, quiet=True
        )
        self.check(result, "download-pit")
        self._resume = True
        try:
            return output.read_bytes()
        except OSError as e:
            raise DeviceIOError(f"Cannot read dumped PIT {output}: {e}") from e

    def set_total_bytes(self, total_bytes: int) -> None:
        # Heimdall computes the session size itself.
        logger.debug("Session total for heimdall: %d bytes", total_bytes)

    def flash_partition(
        self, source: FlashSource, on_progress: ProgressCallback
    ) -> None:
        path = self.stage(source)
        args = [
            "flash",
            f"--{source.partition.name}",
            str(path),
            "--no-reboot",
            *self._session_flags(),
        ]
        result = self.run(
            args,
            timeout=self.flash_timeout,
            on_percent=self.percent_reporter(source, on_progress),
        )
        self.check(result, f"flash {source.partition.name}")
        self._resume = True
        self.release_staged(source)
        on_progress(
            ProgressEvent.from_bytes(
                source.partition.name,
                ProgressPhase.COMMIT,
                source.length,
                source.length,
            )
        )

    def end_session(self) -> None:
        logger.debug("Heimdall session ends with the closing command")

    def reboot(self) -> None:
        # print-pit without --no-reboot closes the session and reboots
        result = self.run(
            ["print-pit", *self._session_flags()],
            timeout=self.detect_timeout,
            quiet=True,
        )
        self.check(result, "reboot")
        self._resume = False


ODIN4_SLOT_FLAGS = {
    FirmwareSlot.BL: "-b",
    FirmwareSlot.AP: "-a",
    FirmwareSlot.CP: "-c",
    FirmwareSlot.CSC: "-s",
    FirmwareSlot.USERDATA: "-u",
}

ODIN4_DEVICE_PATH = re.compile(r"/dev/bus/usb/\d{3}/\d{3}")


class Odin4Backend(ExternalProcessBackend):
    """Samsung odin4 command-line tool.

    odin4 runs a complete protocol session per invocation and cannot dump
    the PIT, so the partition table is read from a PIT file on disk. Each
    partition is handed over as a single-entry tar, named after its PIT file
    name, under the flag of the slot it was selected through. The device
    listed by ``odin4 -l`` is pinned with -d on every later invocation.
    """

    name = "odin4"

    def __init__(
        self,
        executable: str = "odin4",
        *,
        pit_file: Path | None = None,
        tmp_dir: Path | None = None,
        detect_timeout: float = 30,
        flash_timeout: float = 1800,
        requires_elevation: bool = False,
        on_output: OutputCallback | None = None,
    ) -> None:
        super().__init__(
            executable,
            tmp_dir=tmp_dir,
            detect_timeout=detect_timeout,
            flash_timeout=flash_timeout,
            requires_elevation=requires_elevation,
            on_output=on_output,
        )
        self.pit_file = pit_file
        self.device_path: str | None = None

    def _device_flags(self) -> list[str]:
        return ["-d", self.device_path] if self.device_path else []

    def connect(self, device: DeviceCandidate | None) -> None:
        if self.pit_file is None:
            raise BackendLaunchError(
                self.name, "odin4 cannot read the PIT from the device; set a PIT file"
            )
        result = self.run(["-l"], timeout=self.detect_timeout, quiet=True)
        if result.permission_denied:
            self.check(result, "device list")
        if not result.success:
            raise BackendLaunchError(self.name, result.error_text())

        listed = ODIN4_DEVICE_PATH.findall("\n".join(result.stdout_lines))
        if not listed:
            raise BackendLaunchError(self.name, "odin4 lists no device")
        if device is not None and device.usb_path in listed:
            self.device_path = device.usb_path
        else:
            if device is not None:
                logger.warning(
                    "odin4 does not list %s, using %s", device.usb_path, listed[0]
                )
            self.device_path = listed[0]
        logger.info("odin4 targets %s", self.device_path)

    def begin_session(self) -> None:
        # Every odin4 invocation opens its own session.
        logger.debug("odin4 sessions open per invocation")

    def dump_pit(self) -> bytes:
        assert self.pit_file is not None
        try:
            return self.pit_file.read_bytes()
        except OSError as e:
            raise FirmwareReadError(str(self.pit_file), str(e)) from e

    def set_total_bytes(self, total_bytes: int) -> None:
        logger.debug("Session total for odin4: %d bytes", total_bytes)

    def stage_archive(self, source: FlashSource) -> Path:
        """Return a single-entry tar holding the source's bytes.

        The entry is named after the partition's PIT file name. Like stage(),
        a repeated call for the same source returns the archive built first.
        """
        archive = self.workdir / f"{source.partition.name}.tar"
        staged = self._staged.get(id(source))
        if staged is not None and staged[1] == archive:
            return archive

        data_path = self.stage(source)
        info = tarfile.TarInfo(source.partition.file_name)
        try:
            info.size = data_path.stat().st_size
            with tarfile.open(archive, "w") as tar, data_path.open("rb") as data:
                tar.addfile(info, data)
        except (tarfile.TarError, OSError) as e:
            archive.unlink(missing_ok=True)
            raise FirmwareReadError(source.name, str(e)) from e
        self.release_staged(source)
        self._staged[id(source)] = (source, archive)
        return archive

    def flash_partition(
        self, source: FlashSource, on_progress: ProgressCallback
    ) -> None:
        archive = self.stage_archive(source)
        flag = ODIN4_SLOT_FLAGS[source.slot or FirmwareSlot.AP]
        result = self.run(
            [flag, str(archive), *self._device_flags()],
            timeout=self.flash_timeout,
            on_percent=self.percent_reporter(source, on_progress),
        )
        self.check(result, f"flash {source.partition.name}")
        self.release_staged(source)
        on_progress(
            ProgressEvent.from_bytes(
                source.partition.name,
                ProgressPhase.COMMIT,
                source.length,
                source.length,
            )
        )

    def end_session(self) -> None:
        logger.debug("odin4 sessions end with each invocation")

    def reboot(self) -> None:
        result = self.run(
            ["--reboot", *self._device_flags()],
            timeout=self.detect_timeout,
            quiet=True,
        )
        self.check(result, "reboot")


__all__ = [
    "ODIN4_DEVICE_PATH",
    "ODIN4_SLOT_FLAGS",
    "PERMISSION_PATTERN",
    "PROGRESS_PATTERNS",
    "ExternalProcessBackend",
    "HeimdallBackend",
    "Odin4Backend",
    "ProcessResult",
    "is_permission_error",
    "parse_progress",
]
