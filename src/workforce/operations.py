"""Built-in workspace operations registered by the CLI runtime."""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path
from typing import Any

from workforce.capabilities import CapabilityError, Operation
from workforce.models import Capability

MAX_READ_CHARS = 20_000
COMMAND_TIMEOUT_SECONDS = 60.0


class Workspace:
    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def resolve(self, value: object) -> Path:
        raw = str(value or "").strip()
        if not raw:
            raise CapabilityError("A path is required.")
        candidate = Path(raw)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise CapabilityError(f"Path '{raw}' is outside the workspace.")
        return resolved

    def relative(self, path: Path) -> str:
        return str(path.relative_to(self.root)).replace("\\", "/") or "."

    def read_file(self, params: dict[str, Any]) -> str:
        path = self.resolve(params.get("path"))
        if not path.is_file():
            raise CapabilityError(f"File not found: {self.relative(path)}")
        try:
            return path.read_text(encoding="utf-8", errors="replace")[:MAX_READ_CHARS]
        except OSError as exc:
            raise CapabilityError(f"Cannot read {self.relative(path)}: {exc.strerror}") from exc

    def list_files(self, params: dict[str, Any]) -> str:
        path = self.resolve(params.get("path") or ".")
        if not path.is_dir():
            raise CapabilityError(f"Not a directory: {self.relative(path)}")
        try:
            entries = sorted(
                self.relative(item) + ("/" if item.is_dir() else "") for item in path.iterdir()
            )
        except OSError as exc:
            raise CapabilityError(f"Cannot list {self.relative(path)}: {exc.strerror}") from exc
        return "\n".join(entries)

    def write_file(self, params: dict[str, Any]) -> str:
        path = self.resolve(params.get("path"))
        content = str(params.get("content") or "")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise CapabilityError(f"Cannot write {self.relative(path)}: {exc.strerror}") from exc
        return f"Wrote {len(content)} characters to {self.relative(path)}"

    def rename_file(self, params: dict[str, Any]) -> str:
        source = self.resolve(params.get("source"))
        destination = self.resolve(params.get("destination"))
        if not source.exists():
            raise CapabilityError(f"File not found: {self.relative(source)}")
        if destination.is_dir():
            destination = destination / source.name
        if destination.exists():
            raise CapabilityError(f"Destination already exists: {self.relative(destination)}")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            source.rename(destination)
        except OSError as exc:
            raise CapabilityError(f"Cannot rename {self.relative(source)}: {exc.strerror}") from exc
        return f"Renamed {self.relative(source)} to {self.relative(destination)}"

    def run_command(self, params: dict[str, Any]) -> str:
        command = str(params.get("command") or "").strip()
        if not command:
            raise CapabilityError("A command is required.")
        try:
            proc = subprocess.run(
                shlex.split(command),
                cwd=self.root,
                text=True,
                capture_output=True,
                timeout=COMMAND_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as exc:
            raise CapabilityError(f"Command not found: {exc.filename}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CapabilityError(f"Command timed out after {exc.timeout:.0f}s") from exc
        except OSError as exc:
            raise CapabilityError(f"Command could not start: {exc.strerror}") from exc
        output = (proc.stdout + proc.stderr).strip()
        if proc.returncode != 0:
            raise CapabilityError(f"Command exited with {proc.returncode}: {output[-2000:]}")
        return output[-MAX_READ_CHARS:]


def builtin_operations(root: Path) -> list[Operation]:
    workspace = Workspace(root)
    return [
        Operation(
            name="read_file",
            capability=Capability.FILE,
            description="Read a text file from the workspace.",
            handler=workspace.read_file,
            parameters=("path",),
        ),
        Operation(
            name="list_files",
            capability=Capability.FILE,
            description="List the entries of a workspace directory.",
            handler=workspace.list_files,
        ),
        Operation(
            name="write_file",
            capability=Capability.FILE,
            description="Create or overwrite a text file in the workspace.",
            handler=workspace.write_file,
            parameters=("path", "content"),
            requires_confirmation=True,
        ),
        Operation(
            name="rename_file",
            capability=Capability.FILE,
            description="Rename or move a file inside the workspace.",
            handler=workspace.rename_file,
            parameters=("source", "destination"),
            requires_confirmation=True,
        ),
        Operation(
            name="run_command",
            capability=Capability.SHELL,
            description="Run a command (no shell interpolation) in the workspace root.",
            handler=workspace.run_command,
            parameters=("command",),
            requires_confirmation=True,
        ),
    ]
