"""Command execution inside game-server containers.

Every operation opens an exec session, buffers the combined stdout/stderr
stream in full, sanitizes it and classifies the exit condition:

* output containing "No such file or directory" is a not-found condition,
  whatever the exit code. The exec path offers no structured stat call, so
  this text match is the only existence check available to file operations.
* any other non-zero exit code is an internal error.

There is no timeout: a session that never ends blocks its worker thread.
A session whose exit code is still unknown after the stream closes is an
internal error too.
"""
import logging
import re
import shlex
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from docker.errors import APIError

import docker_service as ds
from http_errors import BadRequest, InternalServerError, NotFound, translate_docker_error
from path_service import SANDBOX_PREFIX

logger = logging.getLogger(__name__)

NOT_FOUND_MARKER = "No such file or directory"

ANSI_ESCAPE = re.compile(r"\x1B(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1B]*(?:\x07|\x1B\\)|[@-Z\\-_])")
NON_PRINTABLE = re.compile(r"[^\x20-\x7E\n]")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def sanitize_output(text: str) -> str:
    """ANSI escapes, then non-printable characters (newline kept), then outer whitespace."""
    text = strip_ansi(text)
    text = NON_PRINTABLE.sub("", text)
    return text.strip()


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str

    @property
    def not_found(self) -> bool:
        return NOT_FOUND_MARKER in self.output


@dataclass(frozen=True)
class FileEntry:
    name: str
    is_directory: bool

    def sort_key(self):
        return (not self.is_directory, self.name.casefold(), self.name)

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "isDirectory": self.is_directory}


def _exit_code(client, exec_id: str, attempts: int = 20) -> int:
    # the exit code can lag the end of the output stream by a few milliseconds
    code = None
    for _ in range(attempts):
        info = client.api.exec_inspect(exec_id)
        code = info.get("ExitCode")
        if code is not None and not info.get("Running"):
            break
        time.sleep(0.05)
    if code is None:
        logger.warning("exec %s reported no exit code after %d polls", exec_id, attempts)
        raise InternalServerError("Command exit status unknown", {"execId": exec_id})
    return int(code)


def run_exec(id_or_name: str, cmd: Sequence[str]) -> ExecResult:
    """Run `cmd` in the container and return its sanitized, aggregated output."""
    client = ds.get_client()
    try:
        created = client.api.exec_create(id_or_name, list(cmd), stdout=True, stderr=True, tty=False)
        exec_id = created["Id"] if isinstance(created, dict) else created
        chunks = []
        for chunk in client.api.exec_start(exec_id, stream=True):
            chunks.append(chunk)
        exit_code = _exit_code(client, exec_id)
    except APIError as e:
        raise translate_docker_error(e)
    raw = b"".join(c if isinstance(c, (bytes, bytearray)) else str(c).encode("utf-8") for c in chunks)
    output = sanitize_output(raw.decode("utf-8", errors="ignore"))
    logger.debug("exec %s in %s -> %s", cmd[0] if cmd else "", id_or_name, exit_code)
    return ExecResult(exit_code=exit_code, output=output)


def check_result(result: ExecResult, what: str) -> ExecResult:
    if result.not_found:
        raise NotFound(NOT_FOUND_MARKER)
    if result.exit_code != 0:
        raise InternalServerError(f"{what} failed with code {result.exit_code}", {"output": result.output})
    return result


def _require_sandbox(path: str, prefix: str) -> str:
    if not path.startswith(prefix):
        raise BadRequest(f"path must be inside {prefix}", {"path": path})
    return path


def parse_listing(output: str) -> List[FileEntry]:
    """Parse `ls -a -p` output: directories carry a trailing slash."""
    entries = []
    for line in output.split("\n"):
        item = line.strip()
        if not item or item in ("./", "../", ".", ".."):
            continue
        is_dir = item.endswith("/")
        name = item[:-1] if is_dir else item
        entries.append(FileEntry(name=name, is_directory=is_dir))
    return sorted(entries, key=FileEntry.sort_key)


def list_directory(id_or_name: str, path: str, prefix: str = SANDBOX_PREFIX) -> Optional[List[FileEntry]]:
    """Sorted listing of `path`, or None when it does not exist."""
    _require_sandbox(path, prefix)
    result = run_exec(id_or_name, ["ls", "-a", "-p", path])
    if result.not_found:
        return None
    check_result(result, "ls")
    return parse_listing(result.output)


def read_file(id_or_name: str, path: str, prefix: str = SANDBOX_PREFIX) -> str:
    _require_sandbox(path, prefix)
    return check_result(run_exec(id_or_name, ["cat", path]), "cat").output


def write_file(id_or_name: str, path: str, content: str, prefix: str = SANDBOX_PREFIX) -> str:
    # content travels as an argument, so it is bounded by the kernel's argv limits
    _require_sandbox(path, prefix)
    cmd = ["sh", "-c", 'printf "%s" "$1" > "$2"', "sh", content, path]
    return check_result(run_exec(id_or_name, cmd), "write").output


def create_file(id_or_name: str, path: str, prefix: str = SANDBOX_PREFIX) -> str:
    _require_sandbox(path, prefix)
    return check_result(run_exec(id_or_name, ["touch", path]), "touch").output


def delete_file(id_or_name: str, path: str, prefix: str = SANDBOX_PREFIX) -> str:
    # not safe to retry blindly: a second rm reports not-found
    _require_sandbox(path, prefix)
    return check_result(run_exec(id_or_name, ["rm", path]), "rm").output


def console_command(command: str, bridge: str = "rcon-cli", elevation: Sequence[str] = ("sudo",)) -> List[str]:
    script = f"{bridge} {shlex.quote(command)}" if bridge else command
    return [*elevation, "/bin/bash", "-c", script]


def run_command(
    id_or_name: str,
    command: str,
    bridge: str = "rcon-cli",
    elevation: Sequence[str] = ("sudo",),
    lines: bool = False,
) -> Union[str, List[str]]:
    result = check_result(run_exec(id_or_name, console_command(command, bridge, elevation)), "exec")
    if lines:
        return [ln for ln in result.output.split("\n") if ln.strip()]
    return result.output
