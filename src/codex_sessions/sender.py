"""Deliver queued outbox messages by resuming a session with the Codex CLI."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path

from codex_sessions.errors import MessageSendError

logger = logging.getLogger(__name__)

UNTRUSTED_DIRECTORY = "Not inside a trusted directory"
MISSING_NODE = "env: node: No such file or directory"
LAUNCH_FAILED_STATUS = 127


class MessageSender(ABC):
    """Abstract Base Class for outbox delivery."""

    @abstractmethod
    def send(self, session_id: str, text: str, working_directory: str = "") -> None:
        """Deliver ``text`` to ``session_id``; raise MessageSendError on failure."""
        ...


def codex_arguments(session_id: str, cwd: str, skip_repo_check: bool = False) -> list[str]:
    args: list[str] = []
    if cwd:
        args.extend(["-C", cwd])
    args.append("exec")
    if skip_repo_check:
        args.append("--skip-git-repo-check")
    args.extend(["resume", session_id, "-"])
    return args


def _dedupe(paths: list[str]) -> list[str]:
    seen: list[str] = []
    for path in paths:
        if path and path not in seen:
            seen.append(path)
    return seen


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class CodexCliSender(MessageSender):
    """Run ``codex exec resume <id> -`` with the message on stdin."""

    def __init__(
        self,
        timeout: float = 300.0,
        environ: Mapping[str, str] | None = None,
        home: Path | None = None,
    ):
        self.timeout = timeout
        self._environ = dict(os.environ if environ is None else environ)
        self._home = home or Path.home()

    def extra_paths(self) -> list[str]:
        return [
            "/opt/homebrew/bin",
            "/usr/local/bin",
            "/opt/homebrew/opt/node/bin",
            str(self._home / ".cargo" / "bin"),
            str(self._home / ".local" / "bin"),
            str(self._home / "bin"),
        ]

    def merged_environment(self) -> dict[str, str]:
        env = dict(self._environ)
        current = env.get("PATH") or "/usr/bin:/bin:/usr/sbin:/sbin"
        env["PATH"] = os.pathsep.join(_dedupe(self.extra_paths() + current.split(os.pathsep)))
        return env

    def _resolve(self, name: str, override_var: str, extra: list[str]) -> Path | None:
        explicit = self._environ.get(override_var, "")
        if explicit and _is_executable(Path(explicit)):
            return Path(explicit)

        search = extra + self.merged_environment()["PATH"].split(os.pathsep)
        for directory in _dedupe(search):
            candidate = Path(directory) / name
            if _is_executable(candidate):
                return candidate
        return None

    def resolve_codex(self) -> Path | None:
        return self._resolve("codex", "CODEX_CLI_PATH", ["/usr/bin"])

    def resolve_node(self) -> Path | None:
        node = self._resolve("node", "CODEX_NODE_PATH", ["/usr/bin"])
        if node is not None:
            return node
        nvm_root = self._home / ".nvm" / "versions" / "node"
        try:
            versions = sorted(nvm_root.iterdir(), key=lambda entry: entry.name, reverse=True)
        except OSError:
            return None
        for version in versions:
            candidate = version / "bin" / "node"
            if _is_executable(candidate):
                return candidate
        return None

    def _run(self, cmd: list[str], payload: str, env: dict[str, str]) -> tuple[int, str]:
        logger.debug("running %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=payload,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise MessageSendError(f"Codex CLI timed out after {self.timeout}s") from exc
        except OSError:
            return LAUNCH_FAILED_STATUS, f"Failed to launch {cmd[0]}"
        return result.returncode, (result.stderr or "").strip()

    @staticmethod
    def _failure(status: int, stderr: str) -> MessageSendError:
        if stderr:
            return MessageSendError(f"Codex CLI failed ({status}): {stderr}", exit_code=status)
        return MessageSendError(f"Codex CLI failed with code {status}.", exit_code=status)

    def _run_with_trust_retry(
        self,
        prefix: list[str],
        session_id: str,
        cwd: str,
        payload: str,
        env: dict[str, str],
    ) -> tuple[int, str]:
        status, stderr = self._run(prefix + codex_arguments(session_id, cwd), payload, env)
        if status != 0 and UNTRUSTED_DIRECTORY in stderr:
            logger.debug("retrying with --skip-git-repo-check")
            status, stderr = self._run(
                prefix + codex_arguments(session_id, cwd, skip_repo_check=True),
                payload,
                env,
            )
        return status, stderr

    def send(self, session_id: str, text: str, working_directory: str = "") -> None:
        env = self.merged_environment()
        payload = text if text.endswith("\n") else text + "\n"
        cwd = working_directory.strip()

        codex = self.resolve_codex()
        if codex is None:
            logger.debug("codex not found, falling back to a login shell")
            shell = self._environ.get("SHELL") or "/bin/sh"
            command = shlex.join(["codex", *codex_arguments(session_id, cwd)])
            status, stderr = self._run([shell, "-lc", command], payload, env)
            if status != 0:
                raise self._failure(status, stderr)
            return

        status, stderr = self._run_with_trust_retry([str(codex)], session_id, cwd, payload, env)
        if status == 0:
            return
        if MISSING_NODE in stderr:
            node = self.resolve_node()
            if node is None:
                raise MessageSendError(
                    "Codex CLI requires Node.js. Set CODEX_NODE_PATH or install node."
                )
            logger.debug("retrying through %s", node)
            status, stderr = self._run_with_trust_retry(
                [str(node), str(codex)], session_id, cwd, payload, env
            )
            if status == 0:
                return
        raise self._failure(status, stderr)
