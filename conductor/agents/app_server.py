"""JSON-RPC 2.0 client for the coding agent's app server.

The app server (``codex app-server`` by default) speaks newline-delimited
JSON-RPC over stdio. A reader thread routes responses to pending requests,
answers server-initiated approval requests, and buffers notifications so a
``turn/completed`` that lands before anyone waits for it is not lost.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from conductor import __version__
from conductor.agents.base import AgentSession, TurnCompletion, TurnHandle, TurnPolicy
from conductor.core.config import AgentConfig
from conductor.core.exceptions import AppServerError, TurnTimeoutError

logger = logging.getLogger("conductor.agents.app_server")

METHOD_NOT_FOUND = -32601
NOTIFICATION_BUFFER = 1024

_APPROVAL_RESULTS: dict[str, dict[str, Any]] = {
    "item/fileChange/requestApproval": {"decision": "accept"},
    "item/commandExecution/requestApproval": {
        "decision": "accept",
        "acceptSettings": {"forSession": True},
    },
    "applyPatchApproval": {"decision": "approved_for_session"},
    "execCommandApproval": {"decision": "approved_for_session"},
}


class AppServerClient:
    """Owns the app-server child process and the JSON-RPC plumbing."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.config = config or AgentConfig()
        self.cwd = cwd
        self.env = env
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._pending: dict[int, tuple[str, Future]] = {}
        self._next_id = 1
        self._notifications: deque[tuple[str, Any]] = deque(maxlen=NOTIFICATION_BUFFER)
        self._cond = threading.Condition()
        self._exit_reason: Optional[str] = None

    # -------------------------------------------------------------------
    # Process lifecycle
    # -------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        with self._state_lock:
            if self.running:
                return
            argv = [self.config.command, *self.config.args]
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=self.cwd,
                    env=self._child_env(),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    bufsize=1,
                )
            except OSError as e:
                raise AppServerError(f"Failed to start app server {argv}: {e}") from e

            self._proc = proc
            with self._cond:
                self._exit_reason = None
                self._notifications.clear()
            self._reader = threading.Thread(
                target=self._read_loop, args=(proc,), name="app-server-reader", daemon=True,
            )
            self._reader.start()
            threading.Thread(
                target=self._drain_stderr, args=(proc,), name="app-server-stderr", daemon=True,
            ).start()
            logger.info("App server started: %s (pid=%s)", " ".join(argv), proc.pid)

    def stop(self) -> None:
        """SIGTERM, then SIGKILL after ``stop_timeout_seconds``."""
        with self._state_lock:
            proc = self._proc
            if proc is None:
                return
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=self.config.stop_timeout_seconds)
                except subprocess.TimeoutExpired:
                    logger.warning("App server did not exit after SIGTERM; killing")
                    proc.kill()
                    proc.wait()
            if self._reader is not None:
                self._reader.join(timeout=self.config.stop_timeout_seconds)
            self._proc = None
            self._reader = None
            logger.info("App server stopped (code=%s)", proc.returncode)

    def _child_env(self) -> dict[str, str]:
        merged = dict(os.environ)
        if self.env:
            merged.update(self.env)
        merged.pop("OPENAI_API_KEY", None)
        return merged

    # -------------------------------------------------------------------
    # JSON-RPC
    # -------------------------------------------------------------------

    def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request and block for its result.

        Raises:
            AppServerError: On timeout, an error response, or process exit.
        """
        future: Future = Future()
        with self._write_lock:
            request_id = self._next_id
            self._next_id += 1
        self._pending[request_id] = (method, future)

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            self._write(message)
        except AppServerError:
            self._pending.pop(request_id, None)
            raise

        wait = timeout if timeout is not None else self.config.request_timeout_seconds
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            self._pending.pop(request_id, None)
            raise AppServerError(f"JSON-RPC request timed out ({method})") from None

    def notify(self, method: str, params: Any = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._write(message)

    def wait_for_notification(
        self,
        method: str,
        timeout: float,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Return the params of the first matching notification.

        Buffered notifications that arrived before the call are matched
        too; a matched notification is consumed.

        Raises:
            TurnTimeoutError: Nothing matched within ``timeout`` seconds.
            AppServerError: The process exited while waiting.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                for index, (name, params) in enumerate(self._notifications):
                    if name == method and (predicate is None or predicate(params)):
                        del self._notifications[index]
                        return params
                if self._exit_reason is not None:
                    raise AppServerError(
                        f"app-server exited while waiting for {method}: {self._exit_reason}"
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TurnTimeoutError(f"Timed out waiting for notification: {method}")
                self._cond.wait(remaining)

    def _write(self, message: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.poll() is not None:
            raise AppServerError("app-server is not running")
        payload = json.dumps(message, separators=(",", ":"))
        with self._write_lock:
            try:
                proc.stdin.write(payload + "\n")
                proc.stdin.flush()
            except (BrokenPipeError, ValueError, OSError) as e:
                raise AppServerError(f"Failed writing to app-server: {e}") from e

    # -------------------------------------------------------------------
    # Reader thread
    # -------------------------------------------------------------------

    def _read_loop(self, proc: subprocess.Popen) -> None:
        assert proc.stdout is not None
        for raw in proc.stdout:
            line = raw.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Unparseable app-server output: %.200s", line)
                continue
            if isinstance(message, dict):
                self._dispatch(message)

        code = proc.wait()
        reason = f"code={code}"
        logger.info("App server output closed (%s)", reason)
        self._fail_pending(AppServerError(f"app-server exited ({reason})"))
        with self._cond:
            self._exit_reason = reason
            self._cond.notify_all()

    def _drain_stderr(self, proc: subprocess.Popen) -> None:
        assert proc.stderr is not None
        for line in proc.stderr:
            logger.debug("app-server stderr: %s", line.rstrip())

    def _dispatch(self, message: dict[str, Any]) -> None:
        has_id = "id" in message and message["id"] is not None
        method = message.get("method")

        if has_id and method is None:
            self._handle_response(message)
            return

        if has_id and isinstance(method, str):
            self._handle_server_request(message["id"], method, message.get("params"))
            return

        if isinstance(method, str):
            with self._cond:
                self._notifications.append((method, message.get("params")))
                self._cond.notify_all()

    def _handle_response(self, message: dict[str, Any]) -> None:
        entry = self._pending.pop(message["id"], None) if isinstance(message["id"], int) else None
        if entry is None:
            return
        method, future = entry
        error = message.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            text = error.get("message") if isinstance(error, dict) else str(error)
            future.set_exception(
                AppServerError(f"JSON-RPC request failed ({method}): [{code}] {text}")
            )
            return
        future.set_result(message.get("result"))

    def _handle_server_request(self, request_id: Any, method: str, params: Any) -> None:
        if self.config.auto_approve_requests and method in _APPROVAL_RESULTS:
            logger.debug("Auto-approving %s", method)
            self._reply({"jsonrpc": "2.0", "id": request_id, "result": _APPROVAL_RESULTS[method]})
            return
        self._reply({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {
                "code": METHOD_NOT_FOUND,
                "message": f"Unsupported server-initiated request: {method}",
            },
        })

    def _reply(self, message: dict[str, Any]) -> None:
        try:
            self._write(message)
        except AppServerError as e:
            logger.warning("Could not answer app-server request: %s", e)

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.items())
        self._pending.clear()
        for _, (_, future) in pending:
            if not future.done():
                future.set_exception(error)


def _thread_sandbox(policy: str) -> str:
    if policy in ("readOnly", "read-only"):
        return "read-only"
    if policy in ("dangerFullAccess", "danger-full-access"):
        return "danger-full-access"
    return "workspace-write"


def _turn_sandbox(policy: str) -> dict[str, str]:
    if policy in ("readOnly", "read-only"):
        return {"type": "readOnly"}
    if policy in ("dangerFullAccess", "danger-full-access"):
        return {"type": "dangerFullAccess"}
    return {"type": "workspaceWrite"}


class AppServerSession(AgentSession):
    """AgentSession over an AppServerClient.

    Starts the process and performs the ``initialize`` handshake lazily, and
    again after ``stop()``. Every handshake opens a new process generation;
    a thread last seen in an older generation (or never seen by this
    session, e.g. persisted by an earlier CLI invocation) is re-attached
    with ``thread/resume`` before its next turn.
    """

    def __init__(self, config: Optional[AgentConfig] = None, client: Optional[AppServerClient] = None):
        self.config = config or AgentConfig()
        self.client = client or AppServerClient(self.config)
        self._initialized = False
        self._generation = 0
        self._thread_generation: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    def _ensure_ready(self) -> int:
        with self._lock:
            if self._initialized and self.client.running:
                return self._generation
            self.client.start()
            try:
                self.client.request(
                    "initialize",
                    {"clientInfo": {"name": self.config.client_name, "version": __version__}},
                )
            except AppServerError as e:
                if "Already initialized" not in str(e):
                    raise
            self._initialized = True
            self._generation += 1
            return self._generation

    def start_thread(self, cwd: str, policy: TurnPolicy) -> str:
        generation = self._ensure_ready()
        result = self.client.request("thread/start", {
            "model": policy.model or self.config.model,
            "cwd": cwd,
            "approvalPolicy": policy.approval_policy,
            "sandbox": _thread_sandbox(policy.sandbox_policy),
        })
        thread = (result or {}).get("thread") or {}
        thread_id = thread.get("id")
        if not isinstance(thread_id, str) or not thread_id:
            raise AppServerError("thread/start response did not include a valid threadId")
        with self._lock:
            self._thread_generation[thread_id] = generation
        logger.info("Started thread %s (cwd=%s)", thread_id, cwd)
        return thread_id

    def _attach(self, thread_id: str, generation: int) -> None:
        with self._lock:
            if self._thread_generation.get(thread_id) == generation:
                return
        self.client.request("thread/resume", {"threadId": thread_id})
        with self._lock:
            self._thread_generation[thread_id] = generation
        logger.info("Resumed thread %s in app-server generation %d", thread_id, generation)

    def submit_turn(self, thread_id: str, prompt: str, policy: TurnPolicy, cwd: Optional[str] = None) -> TurnHandle:
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Prompt must be a non-empty string")
        self._attach(thread_id, self._ensure_ready())
        params: dict[str, Any] = {
            "threadId": thread_id,
            "input": [{"type": "text", "text": prompt}],
            "approvalPolicy": policy.approval_policy,
            "sandboxPolicy": _turn_sandbox(policy.sandbox_policy),
            "model": policy.model or self.config.model,
        }
        if cwd:
            params["cwd"] = cwd
        result = self.client.request("turn/start", params)
        turn = (result or {}).get("turn") or {}
        turn_id = turn.get("id")
        if not isinstance(turn_id, str) or not turn_id:
            raise AppServerError("turn/start response did not include a turn id")
        return TurnHandle(thread_id=thread_id, turn_id=turn_id)

    def await_completion(self, handle: TurnHandle, timeout_seconds: float) -> TurnCompletion:
        def _matches(params: Any) -> bool:
            return (
                isinstance(params, dict)
                and params.get("threadId") == handle.thread_id
                and (params.get("turn") or {}).get("id") == handle.turn_id
            )

        params = self.client.wait_for_notification("turn/completed", timeout_seconds, _matches)
        turn = params.get("turn") or {}
        error = turn.get("error") or {}
        return TurnCompletion(
            thread_id=handle.thread_id,
            turn_id=handle.turn_id,
            status=str(turn.get("status") or "completed"),
            error_message=error.get("message") if isinstance(error, dict) else None,
        )

    def interrupt_turn(self, handle: TurnHandle) -> None:
        """Ask the server to abandon one turn; restart the process if it cannot."""
        try:
            self.client.request("turn/interrupt", {"threadId": handle.thread_id, "turnId": handle.turn_id})
        except AppServerError as e:
            logger.warning("turn/interrupt failed for %s (%s); restarting app-server", handle.turn_id, e)
            self.stop()
            return
        logger.info("Interrupted turn %s on thread %s", handle.turn_id, handle.thread_id)

    def stop(self) -> None:
        with self._lock:
            self.client.stop()
            self._initialized = False
