"""Installing, starting and talking to the hegel server process."""

from __future__ import annotations

import atexit
import os
import subprocess
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Union

from hegelrun.connection import HANDSHAKE_STRING, Connection

SUPPORTED_PROTOCOL_VERSIONS = (0.6, 0.7)
HEGEL_SERVER_VERSION = "0.2.3"
HEGEL_SERVER_COMMAND_ENV = "HEGEL_SERVER_COMMAND"
HEGEL_SERVER_DIR = ".hegel"
UV_NOT_FOUND_MESSAGE = (
    "You are seeing this error message because hegel tried to use `uv` to install "
    "hegel-core, but could not find uv on the PATH.\n\n"
    "Hegel uses a Python server component called `hegel-core` to share core "
    "property-based testing functionality across languages. There are two ways for "
    "Hegel to get hegel-core:\n\n"
    "* By default, Hegel looks for uv on the PATH, and uses uv to install hegel-core "
    "to a local `.hegel/venv` directory. We recommend this option. To continue, "
    "install uv.\n"
    "* Alternatively, you can manage the installation of hegel-core yourself. After "
    "installing, setting the HEGEL_SERVER_COMMAND environment variable to your "
    "hegel-core binary path tells hegel to use that hegel-core instead."
)

_HANDSHAKE_PREFIX = "Hegel/"

Command = Union[str, "os.PathLike[str]", Sequence[str]]


class InstallError(RuntimeError):
    """The hegel server could not be installed."""


class HandshakeError(RuntimeError):
    """The server's answer to the handshake was not acceptable."""


def parse_handshake(response: bytes) -> float:
    """Return the protocol version from a handshake reply.

    Raises HandshakeError if the reply is malformed or the version is not
    supported.
    """
    decoded = response.decode("utf-8", errors="replace")
    if not decoded.startswith(_HANDSHAKE_PREFIX):
        raise HandshakeError(f"Bad handshake response: {decoded!r}")
    text = decoded[len(_HANDSHAKE_PREFIX):]
    try:
        if text != text.strip():
            raise ValueError(text)
        version = float(text)
    except ValueError:
        raise HandshakeError(f"Bad version number: {text}") from None

    lo, hi = SUPPORTED_PROTOCOL_VERSIONS
    if not lo <= version <= hi:
        raise HandshakeError(
            f"hegel supports protocol versions {lo} through {hi}, but the connected "
            f"server is using protocol version {version}. Upgrading hegel or "
            "downgrading hegel-core might help."
        )
    return version


def _read_log(path: Path) -> str:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return ""


def ensure_hegel_installed(base_dir: str | os.PathLike[str] = HEGEL_SERVER_DIR) -> str:
    """Install hegel-core into a virtualenv under base_dir with uv.

    Returns the path of the hegel binary; an existing installation of the
    right version is reused.
    """
    base = Path(base_dir)
    venv_dir = base / "venv"
    version_file = venv_dir / "hegel-version"
    hegel_bin = venv_dir / "bin" / "hegel"
    install_log = base / "install.log"

    try:
        cached = version_file.read_text()
    except OSError:
        cached = None
    if cached is not None and cached.strip() == HEGEL_SERVER_VERSION and hegel_bin.is_file():
        return str(hegel_bin)

    try:
        base.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise InstallError(f"Failed to create {base}: {exc}") from exc

    try:
        log = open(install_log, "wb")
    except OSError as exc:
        raise InstallError(f"Failed to create install log: {exc}") from exc

    with log:
        try:
            result = subprocess.run(
                ["uv", "venv", "--clear", str(venv_dir)], stdout=log, stderr=log
            )
        except FileNotFoundError:
            raise InstallError(UV_NOT_FOUND_MESSAGE) from None
        except OSError as exc:
            raise InstallError(f"Failed to run `uv venv`: {exc}") from exc
        if result.returncode != 0:
            log.flush()
            raise InstallError(f"uv venv failed. Install log:\n{_read_log(install_log)}")

        python_path = venv_dir / "bin" / "python"
        try:
            result = subprocess.run(
                [
                    "uv",
                    "pip",
                    "install",
                    "--python",
                    str(python_path),
                    f"hegel-core=={HEGEL_SERVER_VERSION}",
                ],
                stdout=log,
                stderr=log,
            )
        except OSError as exc:
            raise InstallError(f"Failed to run `uv pip install`: {exc}") from exc
        if result.returncode != 0:
            log.flush()
            raise InstallError(
                f"Failed to install hegel-core (version: {HEGEL_SERVER_VERSION}). "
                f"Set {HEGEL_SERVER_COMMAND_ENV} to a hegel binary path to skip "
                f"installation.\nInstall log:\n{_read_log(install_log)}"
            )

    if not hegel_bin.is_file():
        raise InstallError(f"hegel not found at {hegel_bin} after installation")

    try:
        version_file.write_text(HEGEL_SERVER_VERSION)
    except OSError as exc:
        raise InstallError(f"Failed to write version file: {exc}") from exc

    return str(hegel_bin)


_installed_path: str | None = None
_install_lock = threading.Lock()


def find_hegel() -> str:
    """The server command: the environment override, or an installed copy."""
    override = os.environ.get(HEGEL_SERVER_COMMAND_ENV)
    if override is not None:
        return override
    global _installed_path
    with _install_lock:
        if _installed_path is None:
            _installed_path = ensure_hegel_installed()
        return _installed_path


def _open_server_log() -> IO[bytes]:
    server_dir = Path(HEGEL_SERVER_DIR)
    try:
        server_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass
    return open(server_dir / "server.log", "ab")


class HegelSession:
    """A running server process and the connection to it.

    The server's stderr goes to .hegel/server.log. Requests on the control
    channel are serialised; test runs use their own channels.
    """

    def __init__(self, command: Command) -> None:
        if isinstance(command, (str, os.PathLike)):
            argv = [os.fspath(command)]
        else:
            argv = [os.fspath(part) for part in command]
        argv += ["--stdio", "--verbosity", "normal"]

        self._log = _open_server_log()
        env = {**os.environ, "PYTHONUNBUFFERED": "1"}
        try:
            self._process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=self._log,
                env=env,
            )
        except OSError as exc:
            self._log.close()
            raise OSError(f"Failed to spawn hegel at path {argv[0]}: {exc}") from exc

        self._closed = False
        self.connection = Connection(self._process.stdout, self._process.stdin)
        self._control = self.connection.control_channel()
        self._control_lock = threading.Lock()

        try:
            self.protocol_version = parse_handshake(self.send_control(HANDSHAKE_STRING))
        except BaseException:
            self.close()
            raise

        threading.Thread(target=self._monitor, name="hegel-monitor", daemon=True).start()

    def __enter__(self) -> HegelSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _monitor(self) -> None:
        self._process.wait()
        self.connection.mark_server_exited()

    def send_control(self, payload: bytes) -> bytes:
        """Send a request on the control channel and wait for its reply."""
        with self._control_lock:
            message_id = self._control.send_request(payload)
            return self._control.receive_reply(message_id)

    def close(self) -> None:
        """Stop the server process and release its resources."""
        if self._closed:
            return
        self._closed = True
        if self._process.poll() is None:
            self._process.kill()
        self._process.wait()
        self.connection.mark_server_exited()
        for stream in (self._process.stdin, self._process.stdout):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        self._log.close()


_session: HegelSession | None = None
_session_lock = threading.Lock()


def get_session() -> HegelSession:
    """The process-wide server session, started on first use."""
    global _session
    with _session_lock:
        if _session is None:
            _session = HegelSession(find_hegel())
            atexit.register(_session.close)
        return _session