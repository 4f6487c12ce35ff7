"""In-memory agent for tests.

Runs a real AgentServer on ephemeral localhost ports and registers
handlers backed by dictionaries, so every client operation can be driven
end to end over real sockets without touching the test machine.
"""

from __future__ import annotations

import asyncio
import io
import itertools
import shlex
import tarfile
from typing import Any, Optional

from pydantic import SecretStr

from hostwire.agent.server import AgentServer, Reply
from hostwire.core.config import HostConfig
from hostwire.core.exceptions import AgentError
from hostwire.core.hashing import calculate_bytes_hash
from hostwire.wire.messages import Operation, Request


TOKEN = "test-token"
ITERATIONS = 1_000  # keep PBKDF2 cheap in tests

USERS = {"root": 0, "www-data": 33, "deploy": 1000}
GROUPS = {"root": 0, "www-data": 33, "deploy": 1000}


def _parent(path: str) -> str:
    parent = path.rstrip("/").rsplit("/", 1)[0]
    return parent or "/"


class FakeAgent:
    """AgentServer with dictionary-backed handlers for every operation."""

    def __init__(self, token: str = TOKEN, iterations: int = ITERATIONS) -> None:
        self.server = AgentServer(token, iterations=iterations, commit_timeout=5.0)

        self.files: dict[str, bytes] = {}
        self.directories: set[str] = {"/", "/etc", "/tmp", "/var", "/var/www"}
        self.modes: dict[str, int] = {}
        self.owners: dict[str, tuple[str, str]] = {}
        self.protected: set[str] = {"/etc/shadow"}
        self.corrupt_reads: set[str] = set()

        self.available: dict[str, str] = {"nginx": "1.24.0", "curl": "8.5.0", "git": "2.43.0"}
        self.packages: dict[str, str] = {}

        self.services: dict[str, str] = {"nginx": "stopped", "sshd": "running"}
        self.enabled: set[str] = {"sshd"}
        self.start_failures: dict[str, str] = {}
        self.service_calls: list[tuple[str, str]] = []

        self.commands: list[list[str]] = []
        self.hanging = 0
        self.processes: dict[int, str] = {}
        self._pids = itertools.count(4000)

        self.payload_runs: list[dict[str, Any]] = []

        for operation, handler in self._handlers().items():
            self.server.register(operation, handler)

    async def start(self) -> None:
        await self.server.start()

    async def stop(self) -> None:
        await self.server.stop()

    async def __aenter__(self) -> "FakeAgent":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def config(self, token: Optional[str] = None) -> HostConfig:
        config = self.server.client_config()
        if token is not None:
            config = config.model_copy(update={"token": SecretStr(token)})
        return config

    def start_count(self, name: str) -> int:
        return self.service_calls.count(("start", name))

    def _handlers(self) -> dict[str, Any]:
        return {
            Operation.COMMAND_EXEC: self.command_exec,
            Operation.COMMAND_SPAWN: self.command_spawn,
            Operation.COMMAND_STATUS: self.command_status,
            Operation.COMMAND_KILL: self.command_kill,
            Operation.FILE_EXISTS: self.file_exists,
            Operation.FILE_IS_FILE: self.file_is_file,
            Operation.FILE_STAT: self.file_stat,
            Operation.FILE_READ: self.file_read,
            Operation.FILE_DELETE: self.file_delete,
            Operation.FILE_MOVE: self.file_move,
            Operation.FILE_COPY: self.file_copy,
            Operation.FILE_GET_OWNER: self.get_owner,
            Operation.FILE_SET_OWNER: self.set_owner,
            Operation.FILE_GET_MODE: self.get_mode,
            Operation.FILE_SET_MODE: self.set_mode,
            Operation.FILE_UPLOAD: self.file_upload,
            Operation.DIRECTORY_EXISTS: self.directory_exists,
            Operation.DIRECTORY_IS_DIRECTORY: self.directory_exists,
            Operation.DIRECTORY_CREATE: self.directory_create,
            Operation.DIRECTORY_DELETE: self.directory_delete,
            Operation.DIRECTORY_MOVE: self.directory_move,
            Operation.DIRECTORY_GET_OWNER: self.get_owner,
            Operation.DIRECTORY_SET_OWNER: self.set_owner,
            Operation.DIRECTORY_GET_MODE: self.get_mode,
            Operation.DIRECTORY_SET_MODE: self.set_mode,
            Operation.DIRECTORY_LIST: self.directory_list,
            Operation.PACKAGE_INSTALL: self.package_install,
            Operation.PACKAGE_UNINSTALL: self.package_uninstall,
            Operation.PACKAGE_QUERY: self.package_query,
            Operation.PACKAGE_DEFAULT_PROVIDER: self.package_default_provider,
            Operation.SERVICE_STATUS: self.service_status,
            Operation.SERVICE_ACTION: self.service_action,
            Operation.TEMPLATE_RENDER: self.template_render,
            Operation.PAYLOAD_RUN: self.payload_run,
            Operation.HOST_TELEMETRY: self.host_telemetry,
        }

    # Commands

    async def command_exec(self, request: Request, reply: Reply) -> dict[str, Any]:
        argv = list(request.args["argv"])
        if request.args.get("shell"):
            argv = shlex.split(argv[0])
        self.commands.append(argv)
        program, rest = argv[0], argv[1:]

        if program == "echo":
            await reply.stdout(" ".join(rest) + "\n")
            return {"exit_code": 0}
        if program == "false":
            return {"exit_code": 1}
        if program == "warn":
            await reply.stdout("partial\n")
            await reply.stderr("warning: " + " ".join(rest) + "\n")
            return {"exit_code": 2}
        if program == "sleep":
            await asyncio.sleep(float(rest[0]))
            return {"exit_code": 0}
        if program == "hang":
            self.hanging += 1
            await asyncio.Event().wait()
        if program == "cat":
            self._check_access(rest[0])
            if rest[0] not in self.files:
                await reply.stderr(f"cat: {rest[0]}: No such file or directory\n")
                return {"exit_code": 1}
            await reply.stdout(self.files[rest[0]])
            return {"exit_code": 0}
        if program == "count":
            total = int(rest[0])
            for i in range(1, total + 1):
                await reply.progress(i, total)
            return {"exit_code": 0}
        if program == "crash":
            raise RuntimeError("handler blew up")

        await reply.stderr(f"{program}: command not found\n")
        return {"exit_code": 127}

    async def command_spawn(self, request: Request, reply: Reply) -> dict[str, Any]:
        pid = next(self._pids)
        self.processes[pid] = "running"
        self.commands.append(list(request.args["argv"]))
        return {"pid": pid}

    async def command_status(self, request: Request, reply: Reply) -> dict[str, Any]:
        return {"state": self.processes.get(request.args["pid"], "stopped")}

    async def command_kill(self, request: Request, reply: Reply) -> dict[str, Any]:
        pid = request.args["pid"]
        if pid not in self.processes:
            raise AgentError("not_found", f"no process {pid}")
        self.processes[pid] = "stopped"
        return {}

    # Files

    def _check_access(self, path: str) -> None:
        if path in self.protected:
            raise AgentError("permission_denied", f"{path}: Permission denied")

    def _require_file(self, path: str) -> bytes:
        self._check_access(path)
        if path not in self.files:
            raise AgentError("not_found", f"{path}: No such file")
        return self.files[path]

    def _require_path(self, path: str) -> None:
        self._check_access(path)
        if path not in self.files and path not in self.directories:
            raise AgentError("not_found", f"{path}: No such file or directory")

    def _stat(self, path: str) -> dict[str, Any]:
        if path in self.files:
            data = self.files[path]
            return {
                "exists": True,
                "is_file": True,
                "is_directory": False,
                "size": len(data),
                "sha256": calculate_bytes_hash(data),
                "mode": self.modes.get(path, 0o644),
                "owner": self._owner(path),
            }
        if path in self.directories:
            return {"exists": True, "is_file": False, "is_directory": True, "mode": self.modes.get(path, 0o755)}
        return {"exists": False}

    def _owner(self, path: str) -> dict[str, Any]:
        user, group = self.owners.get(path, ("root", "root"))
        return {"user_name": user, "user_uid": USERS[user], "group_name": group, "group_gid": GROUPS[group]}

    async def file_exists(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        return {"exists": path in self.files or path in self.directories}

    async def file_is_file(self, request: Request, reply: Reply) -> dict[str, Any]:
        return {"is_file": request.args["path"] in self.files}

    async def file_stat(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        self._check_access(path)
        return self._stat(path)

    async def file_read(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        data = self._require_file(path)
        digest = calculate_bytes_hash(data)
        if path in self.corrupt_reads:
            data = data[:-1] + bytes([data[-1] ^ 0xFF])
        return {"data": data, "sha256": digest}

    async def file_delete(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        self._check_access(path)
        return {"changed": self.files.pop(path, None) is not None}

    def _relocate(self, request: Request, keep_source: bool) -> dict[str, Any]:
        path, destination = request.args["path"], request.args["destination"]
        data = self._require_file(path)
        self._check_access(destination)
        if destination in self.files and not request.args.get("overwrite"):
            raise AgentError("exists", f"{destination} already exists")
        self.files[destination] = data
        if not keep_source:
            del self.files[path]
        return {"changed": True}

    async def file_move(self, request: Request, reply: Reply) -> dict[str, Any]:
        return self._relocate(request, keep_source=False)

    async def file_copy(self, request: Request, reply: Reply) -> dict[str, Any]:
        return self._relocate(request, keep_source=True)

    async def get_owner(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        self._require_path(path)
        return self._owner(path)

    async def set_owner(self, request: Request, reply: Reply) -> dict[str, Any]:
        path, user, group = request.args["path"], request.args["user"], request.args["group"]
        self._require_path(path)
        if user not in USERS or group not in GROUPS:
            raise AgentError("invalid_request", f"unknown user or group {user}:{group}")
        changed = self.owners.get(path, ("root", "root")) != (user, group)
        self.owners[path] = (user, group)
        return {"changed": changed}

    async def get_mode(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        self._require_path(path)
        return {"mode": self.modes.get(path, 0o755 if path in self.directories else 0o644)}

    async def set_mode(self, request: Request, reply: Reply) -> dict[str, Any]:
        path, mode = request.args["path"], request.args["mode"]
        self._require_path(path)
        changed = self.modes.get(path) != mode
        self.modes[path] = mode
        return {"changed": changed}

    async def file_upload(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        self._check_access(path)
        data = self.server.transfers.get(request.args["transfer_id"])
        if _parent(path) not in self.directories:
            raise AgentError("not_found", f"{_parent(path)}: No such directory")
        if path in self.files:
            if not request.args.get("overwrite"):
                raise AgentError("exists", f"{path} already exists")
            suffix = request.args.get("backup_suffix")
            if suffix:
                self.files[path + suffix] = self.files[path]
        self.files[path] = data
        if "mode" in request.args:
            self.modes[path] = request.args["mode"]
        return self._stat(path)

    # Directories

    async def directory_exists(self, request: Request, reply: Reply) -> dict[str, Any]:
        exists = request.args["path"] in self.directories
        return {"exists": exists, "is_directory": exists}

    async def directory_create(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"].rstrip("/") or "/"
        self._check_access(path)
        if path in self.directories:
            return {"changed": False}
        if path in self.files:
            raise AgentError("exists", f"{path} is a file")
        missing = []
        current = path
        while current not in self.directories:
            missing.append(current)
            current = _parent(current)
        if len(missing) > 1 and not request.args.get("recursive"):
            raise AgentError("not_found", f"{_parent(path)}: No such directory")
        self.directories.update(missing)
        if "mode" in request.args:
            self.modes[path] = request.args["mode"]
        return {"changed": True}

    def _children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return [p for p in (*self.files, *self.directories) if p.startswith(prefix) and p != path]

    async def directory_delete(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        self._check_access(path)
        if path not in self.directories:
            return {"changed": False}
        children = self._children(path)
        if children and not request.args.get("recursive"):
            raise AgentError("not_empty", f"{path}: Directory not empty")
        for child in children:
            self.files.pop(child, None)
            self.directories.discard(child)
        self.directories.discard(path)
        return {"changed": True}

    async def directory_move(self, request: Request, reply: Reply) -> dict[str, Any]:
        path, destination = request.args["path"], request.args["destination"]
        if path not in self.directories:
            raise AgentError("not_found", f"{path}: No such directory")
        if destination in self.directories or destination in self.files:
            raise AgentError("exists", f"{destination} already exists")
        for child in [path, *self._children(path)]:
            moved = destination + child[len(path):]
            if child in self.files:
                self.files[moved] = self.files.pop(child)
            else:
                self.directories.discard(child)
                self.directories.add(moved)
        return {"changed": True}

    async def directory_list(self, request: Request, reply: Reply) -> dict[str, Any]:
        path = request.args["path"]
        if path not in self.directories:
            raise AgentError("not_found", f"{path}: No such directory")
        prefix = path.rstrip("/") + "/"
        entries = {p[len(prefix):].split("/", 1)[0] for p in self._children(path)}
        return {"entries": list(entries)}

    # Packages

    def _check_provider(self, request: Request) -> None:
        provider = request.args.get("provider")
        if provider is not None and provider != "apt":
            raise AgentError("provider_unavailable", f"{provider} is not available on this host")

    async def package_install(self, request: Request, reply: Reply) -> dict[str, Any]:
        self._check_provider(request)
        name = request.args["name"]
        if name not in self.available:
            raise AgentError("package_not_found", f"Unable to locate package {name}")
        changed = name not in self.packages
        self.packages[name] = self.available[name]
        return {"installed_version": self.packages[name], "changed": changed, "provider": "apt"}

    async def package_uninstall(self, request: Request, reply: Reply) -> dict[str, Any]:
        self._check_provider(request)
        name = request.args["name"]
        changed = self.packages.pop(name, None) is not None
        return {"installed_version": None, "changed": changed, "provider": "apt"}

    async def package_query(self, request: Request, reply: Reply) -> dict[str, Any]:
        self._check_provider(request)
        return {"installed_version": self.packages.get(request.args["name"]), "changed": False, "provider": "apt"}

    async def package_default_provider(self, request: Request, reply: Reply) -> dict[str, Any]:
        return {"provider": "apt"}

    # Services

    def _require_service(self, name: str) -> None:
        if name not in self.services:
            raise AgentError("service_not_found", f"Unit {name}.service could not be found")

    async def service_status(self, request: Request, reply: Reply) -> dict[str, Any]:
        name = request.args["name"]
        self._require_service(name)
        return {"state": self.services[name]}

    async def service_action(self, request: Request, reply: Reply) -> dict[str, Any]:
        name, action = request.args["name"], request.args["action"]
        self._require_service(name)
        self.service_calls.append((action, name))

        if action == "start":
            if name in self.start_failures:
                self.services[name] = "failed"
                raise AgentError("start_failed", self.start_failures[name])
            changed = self.services[name] != "running"
            self.services[name] = "running"
        elif action == "stop":
            changed = self.services[name] != "stopped"
            self.services[name] = "stopped"
        elif action == "restart":
            self.services[name] = "stopped"
            if name in self.start_failures:
                raise AgentError("start_failed", self.start_failures[name], {"stopped": True})
            self.services[name] = "running"
            changed = True
        elif action == "enable":
            changed = name not in self.enabled
            self.enabled.add(name)
        elif action == "disable":
            changed = name in self.enabled
            self.enabled.discard(name)
        else:
            raise AgentError("invalid_request", f"unknown service action {action}")
        return {"state": self.services[name], "changed": changed}

    # Templates

    async def template_render(self, request: Request, reply: Reply) -> dict[str, Any]:
        source, variables = request.args["source"], request.args["variables"]
        engine = request.args.get("engine", "format")
        if engine != "format":
            raise AgentError("invalid_request", f"unsupported template engine {engine}")
        try:
            text = source.format_map(variables)
        except KeyError as e:
            missing = e.args[0]
            line = next(
                (i for i, text_line in enumerate(source.splitlines(), 1) if "{" + missing in text_line),
                None,
            )
            raise AgentError("render_error", f"undefined variable '{missing}'", {"line": line}) from None
        except (ValueError, IndexError) as e:
            raise AgentError("render_error", str(e)) from None

        destination = request.args.get("destination")
        if destination is not None:
            self._check_access(destination)
            if destination in self.files and not request.args.get("overwrite", True):
                raise AgentError("exists", f"{destination} already exists")
            self.files[destination] = text.encode("utf-8")
        return {"text": text, "destination": destination}

    # Payloads

    async def payload_run(self, request: Request, reply: Reply) -> dict[str, Any]:
        bundle = self.server.transfers.get(request.args["transfer_id"])
        with tarfile.open(fileobj=io.BytesIO(bundle), mode="r:gz") as tar:
            contents = {
                member.name: tar.extractfile(member).read()
                for member in tar.getmembers()
                if member.isfile()
            }
        entrypoint = request.args["entrypoint"]
        if entrypoint not in contents:
            raise AgentError("not_found", f"entrypoint {entrypoint} not in payload")

        args = list(request.args.get("args", []))
        self.payload_runs.append({"entrypoint": entrypoint, "args": args, "files": sorted(contents)})
        await reply.stdout(f"running {' '.join([entrypoint, *args])}\n")
        return {"exit_code": 0}

    # Telemetry

    async def host_telemetry(self, request: Request, reply: Reply) -> dict[str, Any]:
        return {
            "cpu": {"architecture": "x86_64", "cores": 4},
            "os": {"family": "linux", "distribution": "debian", "version": "12", "hostname": "fake-agent"},
            "filesystems": [{"mount": "/", "size": 50_000_000_000, "used": 12_000_000_000}],
            "network": [{"interface": "eth0", "addresses": ["10.0.0.5/24"]}],
        }
