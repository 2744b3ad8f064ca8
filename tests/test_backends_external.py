"""Tests for backends/external.py - external-process backends."""

import io
import json
import sys

import lz4.frame
import pytest

from aesir.backends.external import (
    ODIN4_SLOT_FLAGS,
    HeimdallBackend,
    Odin4Backend,
    ProcessResult,
    is_permission_error,
    parse_progress,
)
from aesir.errors import (
    BackendLaunchError,
    DeviceIOError,
    PermissionDeniedError,
)
from aesir.firmware.models import FlashSource
from aesir.firmware.resolver import resolve
from aesir.types import DeviceCandidate, FirmwareSlot, ProgressPhase

FAKE_HEIMDALL = """#!PYTHON
import json
import pathlib
import sys

here = pathlib.Path(__file__).parent
args = sys.argv[1:]
with open(here / "calls.log", "a") as log:
    log.write(json.dumps(args) + "\\n")

fail = here / "fail"
if fail.exists():
    mode = fail.read_text().strip()
    if mode == "permission":
        sys.stderr.write("ERROR: Failed to access device. libusb error: -3\\n")
    else:
        sys.stderr.write("ERROR: Protocol initialisation failed!\\n")
    sys.exit(1)

if args[0] == "download-pit":
    out = pathlib.Path(args[args.index("--output") + 1])
    out.write_bytes(b"PITDATA")
elif args[0] == "flash":
    data = pathlib.Path(args[2]).read_bytes()
    (here / (args[1][2:] + ".bin")).write_bytes(data)
    sys.stdout.write("Uploading " + args[1][2:] + "\\n")
    sys.stdout.write("0%\\r50%\\r100%\\n")
print("Done")
"""

FAKE_ODIN4 = """#!PYTHON
import json
import pathlib
import sys
import tarfile

here = pathlib.Path(__file__).parent
args = sys.argv[1:]
with open(here / "calls.log", "a") as log:
    log.write(json.dumps(args) + "\\n")

fail = here / "fail"
if fail.exists():
    if fail.read_text().strip() == "permission":
        sys.stderr.write("ERROR: Failed to open device: Permission denied\\n")
    else:
        sys.stderr.write("ERROR: Setup connection failed\\n")
    sys.exit(1)

if args[0] == "-l":
    devices = here / "devices"
    if devices.exists():
        sys.stdout.write(devices.read_text())
    else:
        print("/dev/bus/usb/001/007")
    sys.exit(0)

for flag in ("-b", "-a", "-c", "-s", "-u"):
    if flag in args:
        with tarfile.open(args[args.index(flag) + 1]) as tar:
            for member in tar.getmembers():
                data = tar.extractfile(member).read()
                (here / (flag[1:] + "-" + member.name)).write_bytes(data)
        sys.stdout.write("[ 40%] uploading\\n[100%] uploading\\n")
print("Done")
"""


class StubElevation:
    """Stands in for a sudo wrapper: runs a script that echoes stdin."""

    def __init__(self, password: str) -> None:
        self.password = password
        self.wrapped: list[list[str]] = []

    def wrap(self, argv):
        self.wrapped.append(argv)
        return [
            sys.executable,
            "-c",
            "import sys; print('stdin:' + sys.stdin.readline().strip())",
        ]

    def stdin_payload(self):
        return (self.password + "\n").encode()


@pytest.fixture
def heimdall(tmp_path):
    """Fake heimdall executable writing its argv to calls.log."""
    tool_dir = tmp_path / "tool"
    tool_dir.mkdir()
    script = tool_dir / "heimdall"
    script.write_text(FAKE_HEIMDALL.replace("PYTHON", sys.executable))
    script.chmod(0o755)
    return script


@pytest.fixture
def backend(heimdall, tmp_path):
    return HeimdallBackend(str(heimdall), tmp_dir=tmp_path / "work", detect_timeout=10)


def _calls(heimdall) -> list[list[str]]:
    log = heimdall.parent / "calls.log"
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines()]


def _source(pit_table, data: bytes, name: str = "boot.img") -> FlashSource:
    return FlashSource(
        name=name,
        stream=io.BytesIO(data),
        length=len(data),
        partition=pit_table.find_by_file_name(name),
    )


class TestParseProgress:
    """Tests for percentage extraction from tool output."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("42%", 42),
            ("  7 %", 7),
            ("Progress: 55%", 55),
            ("[ 80%]", 80),
            ("63% - writing block", 63),
            ("Uploading BOOT 12%", 12),
            ("Flashing partition... 99%", 99),
            ("Progress: 150% [30%]", 30),
            ("Uploading BOOT", None),
            ("Initialising protocol...", None),
            ("150%", None),
            ("", None),
        ],
    )
    def test_patterns(self, line, expected):
        """Known progress shapes parse; out-of-range values are skipped."""
        assert parse_progress(line) == expected


class TestPermissionPatterns:
    """Tests for permission failure detection."""

    @pytest.mark.parametrize(
        "line",
        [
            "ERROR: Failed to access device. libusb error: -3",
            "libusb: error [_get_usbfs_fd] libusb couldn't open USB device: "
            "Permission denied",
            "LIBUSB_ERROR_ACCESS",
            "Operation not permitted",
        ],
    )
    def test_permission_lines(self, line):
        """Access failures are recognised."""
        assert is_permission_error(line)

    def test_other_errors(self):
        """Unrelated failures are not permission failures."""
        assert not is_permission_error("ERROR: Protocol initialisation failed!")


class TestProcessResult:
    """Tests for ProcessResult."""

    def test_error_text_prefers_stderr(self):
        """stderr is used for error messages when present."""
        result = ProcessResult(1, ["out"], [f"err{i}" for i in range(8)])

        assert result.error_text() == "err3; err4; err5; err6; err7"
        assert not result.success

    def test_error_text_exit_code(self):
        """Without output the exit code is reported."""
        assert ProcessResult(2).error_text() == "exit code 2"


class TestRun:
    """Tests for running and reading an external process."""

    def _python(self, tmp_path, **kwargs):
        return HeimdallBackend(sys.executable, tmp_dir=tmp_path, **kwargs)

    def test_carriage_return_progress(self, tmp_path):
        """Percentages redrawn with carriage returns are all seen."""
        backend = self._python(tmp_path)
        seen = []

        result = backend.run(
            ["-c", "import sys; sys.stdout.write('10%\\r20%\\r30%\\nDone\\n')"],
            timeout=10,
            on_percent=seen.append,
        )

        assert result.success
        assert seen == [10, 20, 30]
        assert result.stdout_lines == ["Done"]

    def test_backspace_progress(self, tmp_path):
        """Percentages redrawn with backspaces are all seen."""
        backend = self._python(tmp_path)
        seen = []

        backend.run(
            ["-c", "import sys; sys.stdout.write('5%\\b\\b25%\\b\\b\\b75%\\n')"],
            timeout=10,
            on_percent=seen.append,
        )

        assert seen == [5, 25, 75]

    def test_output_forwarded(self, tmp_path):
        """Non-progress lines are forwarded to the output callback."""
        lines = []
        backend = self._python(tmp_path, on_output=lines.append)

        backend.run(["-c", "print('hello'); print('world')"], timeout=10)

        assert lines == ["hello", "world"]

    def test_quiet_not_forwarded(self, tmp_path):
        """Quiet invocations keep stdout out of the output callback."""
        lines = []
        backend = self._python(tmp_path, on_output=lines.append)

        result = backend.run(["-c", "print('hello')"], timeout=10, quiet=True)

        assert lines == []
        assert result.stdout_lines == ["hello"]

    def test_permission_on_stderr(self, tmp_path):
        """A permission failure on stderr is flagged and raised by check."""
        backend = self._python(tmp_path)
        script = (
            "import sys; sys.stderr.write('libusb error: -3\\n'); sys.exit(1)"
        )

        result = backend.run(["-c", script], timeout=10)

        assert result.permission_denied
        with pytest.raises(PermissionDeniedError):
            backend.check(result, "detect")

    def test_other_failure(self, tmp_path):
        """Other non-zero exits become device errors."""
        backend = self._python(tmp_path)

        result = backend.run(["-c", "import sys; sys.exit(3)"], timeout=10)

        assert result.exit_code == 3
        with pytest.raises(DeviceIOError, match="exit code 3"):
            backend.check(result, "flash")

    def test_timeout(self, tmp_path):
        """A process exceeding its timeout is killed."""
        backend = self._python(tmp_path)

        with pytest.raises(DeviceIOError, match="timed out"):
            backend.run(["-c", "import time; time.sleep(30)"], timeout=0.5)

    def test_missing_executable(self, tmp_path):
        """An executable that cannot be started is a launch failure."""
        backend = HeimdallBackend(str(tmp_path / "missing"), tmp_dir=tmp_path)

        with pytest.raises(BackendLaunchError):
            backend.run(["detect"], timeout=5)

    def test_elevated_password_on_stdin(self, tmp_path):
        """Elevated invocations receive the password on stdin only."""
        backend = self._python(tmp_path)
        elevation = StubElevation("hunter2")
        backend.elevate(elevation)

        result = backend.run(["detect"], timeout=10, quiet=True)

        assert backend.is_elevated
        assert elevation.wrapped == [[sys.executable, "detect"]]
        assert result.stdout_lines == ["stdin:hunter2"]


class TestHeimdallBackend:
    """Tests for the heimdall command sequence."""

    def test_connect_runs_detect(self, backend, heimdall):
        """connect runs heimdall detect."""
        device = DeviceCandidate(1, 4, "04e8", "685d")
        backend.connect(device)

        assert _calls(heimdall) == [["detect"]]

    def test_detect_failure_is_launch_error(self, backend, heimdall):
        """A failed detect lets the chain fall back."""
        (heimdall.parent / "fail").write_text("io")

        with pytest.raises(BackendLaunchError):
            backend.connect(None)

    def test_detect_permission_failure(self, backend, heimdall):
        """A permission failure during detect triggers escalation."""
        (heimdall.parent / "fail").write_text("permission")

        with pytest.raises(PermissionDeniedError):
            backend.connect(None)

    def test_command_sequence(self, backend, heimdall, pit_table):
        """Commands after the PIT download resume the device session."""
        backend.connect(None)
        assert backend.dump_pit() == b"PITDATA"
        events = []
        backend.flash_partition(_source(pit_table, b"kernel"), events.append)
        backend.reboot()

        calls = _calls(heimdall)
        assert calls[0] == ["detect"]
        assert calls[1][0] == "download-pit"
        assert "--no-reboot" in calls[1]
        assert "--resume" not in calls[1]
        assert calls[2][:2] == ["flash", "--BOOT"]
        assert calls[2][3:] == ["--no-reboot", "--resume"]
        assert calls[3] == ["print-pit", "--resume"]
        assert (heimdall.parent / "BOOT.bin").read_bytes() == b"kernel"

        assert [e.percent for e in events] == [0, 50, 100, 100]
        assert events[-1].phase == ProgressPhase.COMMIT
        assert events[1].bytes_sent == 3

    def test_flash_permission_failure(self, backend, heimdall, pit_table):
        """A permission failure during flash is raised for escalation."""
        backend.connect(None)
        (heimdall.parent / "fail").write_text("permission")

        with pytest.raises(PermissionDeniedError):
            backend.flash_partition(_source(pit_table, b"x"), lambda e: None)

    def test_plain_file_used_in_place(self, backend, tmp_path, pit_table):
        """Uncompressed standalone images are not copied."""
        image = tmp_path / "boot.img"
        image.write_bytes(b"image")

        with resolve(image, pit_table) as plan:
            assert backend.stage(plan.sources[0]) == image

    def test_compressed_source_staged_decompressed(
        self, backend, heimdall, tmp_path, pit_table
    ):
        """Compressed sources are written to the tool decompressed."""
        payload = b"system image" * 1000
        image = tmp_path / "system.img.lz4"
        image.write_bytes(lz4.frame.compress(payload))

        with resolve(image, pit_table) as plan:
            backend.flash_partition(plan.sources[0], lambda e: None)

        assert (heimdall.parent / "SYSTEM.bin").read_bytes() == payload
        staged = _calls(heimdall)[0][2]
        assert staged.endswith("SYSTEM-system.img")

    def test_staged_copy_reused_on_retry(self, backend, heimdall, pit_table):
        """A retried transfer reuses the staged copy of a consumed stream."""
        source = _source(pit_table, b"modem firmware", name="modem.bin")
        (heimdall.parent / "fail").write_text("permission")
        with pytest.raises(PermissionDeniedError):
            backend.flash_partition(source, lambda e: None)
        assert source.stream.read() == b""

        (heimdall.parent / "fail").unlink()
        backend.flash_partition(source, lambda e: None)

        assert (heimdall.parent / "RADIO.bin").read_bytes() == b"modem firmware"
        first, second = _calls(heimdall)
        assert first[2] == second[2]

    def test_disconnect_removes_workdir(self, backend, pit_table):
        """disconnect deletes staged files and the staging directory."""
        source = _source(pit_table, b"data")
        staged = backend.stage(source)
        workdir = backend.workdir
        assert staged.exists()

        backend.disconnect()
        backend.disconnect()

        assert not workdir.exists()


@pytest.fixture
def odin4(tmp_path):
    """Fake odin4 executable unpacking each slot archive next to itself."""
    tool_dir = tmp_path / "odin4-tool"
    tool_dir.mkdir()
    script = tool_dir / "odin4"
    script.write_text(FAKE_ODIN4.replace("PYTHON", sys.executable))
    script.chmod(0o755)
    return script


@pytest.fixture
def pit_file(tmp_path, pit_bytes):
    path = tmp_path / "device.pit"
    path.write_bytes(pit_bytes)
    return path


@pytest.fixture
def odin4_backend(odin4, pit_file, tmp_path):
    return Odin4Backend(
        str(odin4), pit_file=pit_file, tmp_dir=tmp_path / "work", detect_timeout=10
    )


@pytest.fixture
def device():
    return DeviceCandidate(bus=1, address=7, vendor_id="04e8", product_id="685d")


class TestOdin4Backend:
    """Tests for the odin4 command sequence."""

    def test_connect_without_pit_file(self, odin4, tmp_path, device):
        """Without a PIT file the chain must fall back to another backend."""
        backend = Odin4Backend(str(odin4), tmp_dir=tmp_path / "work")

        with pytest.raises(BackendLaunchError) as exc_info:
            backend.connect(device)

        assert exc_info.value.backend == "odin4"
        assert _calls(odin4) == []

    def test_connect_selects_listed_device(self, odin4_backend, odin4, device):
        """The device matching the candidate's usbfs node is selected."""
        (odin4.parent / "devices").write_text(
            "/dev/bus/usb/001/003\n/dev/bus/usb/001/007\n"
        )

        odin4_backend.connect(device)

        assert _calls(odin4) == [["-l"]]
        assert odin4_backend.device_path == "/dev/bus/usb/001/007"

    def test_connect_unlisted_device_uses_first(self, odin4_backend, odin4):
        """A candidate odin4 does not list falls back to the first device."""
        (odin4.parent / "devices").write_text("/dev/bus/usb/002/004\n")
        other = DeviceCandidate(bus=3, address=9, vendor_id="04e8", product_id="685d")

        odin4_backend.connect(other)

        assert odin4_backend.device_path == "/dev/bus/usb/002/004"

    def test_connect_no_device_listed(self, odin4_backend, odin4, device):
        """An empty device list is a launch failure."""
        (odin4.parent / "devices").write_text("")

        with pytest.raises(BackendLaunchError, match="no device"):
            odin4_backend.connect(device)

    def test_connect_permission_failure(self, odin4_backend, odin4, device):
        """A permission failure while listing triggers escalation."""
        (odin4.parent / "fail").write_text("permission")

        with pytest.raises(PermissionDeniedError):
            odin4_backend.connect(device)

    def test_dump_pit_reads_file(self, odin4_backend, odin4, device, pit_bytes):
        """The PIT comes from the configured file, not the device."""
        odin4_backend.connect(device)

        assert odin4_backend.dump_pit() == pit_bytes
        assert _calls(odin4) == [["-l"]]

    @pytest.mark.parametrize(
        "slot, flag",
        [
            (FirmwareSlot.BL, "-b"),
            (FirmwareSlot.AP, "-a"),
            (FirmwareSlot.CP, "-c"),
            (FirmwareSlot.CSC, "-s"),
            (FirmwareSlot.USERDATA, "-u"),
        ],
    )
    def test_slot_flag_and_device(
        self, odin4_backend, odin4, device, pit_table, slot, flag
    ):
        """Each slot maps to its odin4 flag and the device is pinned with -d."""
        odin4_backend.connect(device)
        source = _source(pit_table, b"modem firmware", name="modem.bin")
        source.slot = slot

        odin4_backend.flash_partition(source, lambda e: None)

        args = _calls(odin4)[-1]
        assert args[0] == flag
        assert args[1].endswith("RADIO.tar")
        assert args[2:] == ["-d", "/dev/bus/usb/001/007"]
        assert ODIN4_SLOT_FLAGS[slot] == flag
        unpacked = odin4.parent / f"{flag[1:]}-modem.bin"
        assert unpacked.read_bytes() == b"modem firmware"

    def test_archive_entry_named_after_pit_file_name(
        self, odin4_backend, odin4, device, tmp_path, pit_table
    ):
        """The tar entry carries the PIT file name, not the source's name."""
        payload = b"kernel" * 100
        image = tmp_path / "boot.img.lz4"
        image.write_bytes(lz4.frame.compress(payload))
        odin4_backend.connect(device)

        with resolve(image, pit_table) as plan:
            odin4_backend.flash_partition(plan.sources[0], lambda e: None)

        assert _calls(odin4)[-1][0] == "-a"
        assert (odin4.parent / "a-boot.img").read_bytes() == payload

    def test_progress_events(self, odin4_backend, device, pit_table):
        """Tool percentages become events ending in a full commit."""
        odin4_backend.connect(device)
        events = []

        odin4_backend.flash_partition(_source(pit_table, b"kernel"), events.append)

        assert [e.percent for e in events] == [40, 100, 100]
        assert events[-1].phase == ProgressPhase.COMMIT
        assert all(e.partition == "BOOT" for e in events)

    def test_archive_reused_on_retry(self, odin4_backend, odin4, device, pit_table):
        """A retried transfer reuses the archive built from a consumed stream."""
        odin4_backend.connect(device)
        source = _source(pit_table, b"modem firmware", name="modem.bin")
        (odin4.parent / "fail").write_text("protocol")
        with pytest.raises(DeviceIOError):
            odin4_backend.flash_partition(source, lambda e: None)
        assert source.stream.read() == b""
        workdir = odin4_backend.workdir
        assert [p.name for p in workdir.iterdir()] == ["RADIO.tar"]

        (odin4.parent / "fail").unlink()
        odin4_backend.flash_partition(source, lambda e: None)

        assert (odin4.parent / "a-modem.bin").read_bytes() == b"modem firmware"
        first, second = _calls(odin4)[-2:]
        assert first[1] == second[1]
        assert list(workdir.iterdir()) == []

    def test_reboot_targets_device(self, odin4_backend, odin4, device):
        """reboot passes --reboot with the selected device."""
        odin4_backend.connect(device)
        odin4_backend.reboot()

        assert _calls(odin4)[-1] == ["--reboot", "-d", "/dev/bus/usb/001/007"]
