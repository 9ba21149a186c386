from __future__ import annotations

from collections import deque
from concurrent.futures import Future, TimeoutError as FutureTimeout, wait as futures_wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping
import itertools
import os
import subprocess
import threading
import time

from loguru import logger

from traverse_client.exceptions import (
    ProtocolError,
    RequestCancelled,
    RequestTimeoutError,
    ServerError,
    SessionClosed,
    StartError,
    TraverseError,
)
from traverse_client.rpc import (
    FrameDecoder,
    JSONObject,
    JSONValue,
    MalformedFrame,
    encode_message,
    notification_message,
    request_message,
    response_message,
)

EXECUTE_COMMAND_METHOD = "workspace/executeCommand"
_READ_SIZE = 64 * 1024
_CANCEL_POLL_SECONDS = 0.2
_LOG_MESSAGE_LEVELS = {1: "ERROR", 2: "WARNING", 3: "INFO", 4: "DEBUG", 5: "DEBUG"}


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


@dataclass(frozen=True)
class LaunchSpec:
    executable: Path
    working_directory: Path
    env: Mapping[str, str] = field(default_factory=dict)
    initialization_options: JSONObject = field(default_factory=dict)


class PendingRequest:
    """Handle for one outstanding request; resolves when the matching id arrives."""

    def __init__(self, session: "ServerSession", request_id: int, method: str, future: Future) -> None:
        self._session = session
        self.request_id = request_id
        self.method = method
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(
        self,
        timeout: float | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> JSONValue:
        if cancel_event is None:
            try:
                return self._future.result(timeout=timeout)
            except FutureTimeout:
                self._session._abandon(self.request_id)
                raise RequestTimeoutError(f"{self.method} did not answer within {timeout}s") from None
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait_for = _CANCEL_POLL_SECONDS
            if deadline is not None:
                wait_for = max(0.0, min(wait_for, deadline - time.monotonic()))
            done, _ = futures_wait([self._future], timeout=wait_for)
            if done:
                return self._future.result()
            if cancel_event.is_set():
                self.cancel()
                return self._future.result()
            if deadline is not None and time.monotonic() >= deadline:
                self._session._abandon(self.request_id)
                raise RequestTimeoutError(f"{self.method} did not answer within {timeout}s")

    def cancel(self) -> None:
        self._session._cancel(self.request_id)


class ServerSession:
    """Owns at most one server subprocess speaking framed JSON-RPC over stdio."""

    def __init__(
        self,
        *,
        process_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        handshake_timeout: float = 30.0,
        stop_grace: float = 5.0,
        malformed_frame_limit: int = 3,
        stderr_tail_lines: int = 40,
        notification_callback: Callable[[JSONObject], None] | None = None,
    ) -> None:
        self.process_factory = process_factory
        self.handshake_timeout = handshake_timeout
        self.stop_grace = stop_grace
        self.malformed_frame_limit = malformed_frame_limit
        self.notification_callback = notification_callback
        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, Future]] = {}
        self._proc: subprocess.Popen | None = None
        self._generation = 0
        self._threads: list[threading.Thread] = []
        self._stderr_tail: deque[str] = deque(maxlen=stderr_tail_lines)
        self._malformed_streak = 0
        self._launch: LaunchSpec | None = None
        self.server_info: JSONObject = {}

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING

    @property
    def launch_spec(self) -> LaunchSpec | None:
        return self._launch

    @property
    def malformed_streak(self) -> int:
        return self._malformed_streak

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    @property
    def returncode(self) -> int | None:
        proc = self._proc
        return None if proc is None else proc.poll()

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        if previous is not state:
            logger.debug(f"Server session {previous.value} -> {state.value}")

    def start(
        self,
        executable: Path,
        working_directory: Path,
        env: Mapping[str, str] | None = None,
        *,
        initialization_options: JSONObject | None = None,
    ) -> None:
        launch = LaunchSpec(
            executable=Path(executable),
            working_directory=Path(working_directory),
            env=dict(env if env is not None else os.environ),
            initialization_options=dict(initialization_options or {}),
        )
        with self._lifecycle_lock:
            if self.state is not SessionState.IDLE:
                self.stop()
            self._start(launch)

    def _start(self, launch: LaunchSpec) -> None:
        self._launch = launch
        self._set_state(SessionState.STARTING)
        self._stderr_tail.clear()
        self._malformed_streak = 0
        try:
            proc = self.process_factory(
                [str(launch.executable)],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(launch.working_directory),
                env=dict(launch.env),
                bufsize=0,
            )
        except (OSError, ValueError) as exc:
            self._set_state(SessionState.IDLE)
            raise StartError(f"Unable to spawn server {launch.executable}: {exc}") from exc
        self._proc = proc
        self._generation += 1
        generation = self._generation
        self._threads = [
            threading.Thread(target=self._read_loop, args=(proc, generation), name="traverse-rpc-reader", daemon=True),
            threading.Thread(target=self._stderr_loop, args=(proc,), name="traverse-rpc-stderr", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Started server {launch.executable} (pid {getattr(proc, 'pid', '?')})")
        params: JSONObject = {
            "processId": os.getpid(),
            "rootUri": launch.working_directory.resolve().as_uri(),
            "capabilities": {},
            "initializationOptions": launch.initialization_options,
        }
        try:
            result = self._send(
                "initialize",
                params,
                allowed=(SessionState.STARTING,),
            ).result(timeout=self.handshake_timeout)
            self._write(notification_message("initialized", {}))
        except TraverseError as exc:
            self._teardown(graceful=False)
            tail = self.stderr_tail
            self._set_state(SessionState.CRASHED)
            raise StartError(f"Server failed its handshake ({exc})", stderr_tail=tail) from exc
        if isinstance(result, dict) and isinstance(result.get("serverInfo"), dict):
            self.server_info = result["serverInfo"]
        self._set_state(SessionState.RUNNING)

    def send_request(self, method: str, params: JSONValue = None) -> PendingRequest:
        return self._send(method, params, allowed=(SessionState.RUNNING,))

    def request(
        self,
        method: str,
        params: JSONValue = None,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> JSONValue:
        return self.send_request(method, params).result(timeout=timeout, cancel_event=cancel_event)

    def execute_command(
        self,
        command: str,
        arguments: list[JSONValue],
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> JSONValue:
        return self.request(
            EXECUTE_COMMAND_METHOD,
            {"command": command, "arguments": arguments},
            timeout=timeout,
            cancel_event=cancel_event,
        )

    def notify(self, method: str, params: JSONValue = None) -> None:
        if not self.is_running:
            raise SessionClosed(f"Cannot send {method}: session is {self.state.value}")
        self._write(notification_message(method, params))

    def _send(self, method: str, params: JSONValue, *, allowed: tuple[SessionState, ...]) -> PendingRequest:
        future: Future = Future()
        with self._state_lock:
            if self._state not in allowed:
                raise SessionClosed(f"Cannot send {method}: session is {self._state.value}")
            request_id = next(self._ids)
            self._pending[request_id] = (method, future)
        try:
            self._write(request_message(request_id, method, params))
        except SessionClosed:
            self._abandon(request_id)
            raise
        return PendingRequest(self, request_id, method, future)

    def _write(self, message: JSONObject) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise SessionClosed("Server process is not running")
        data = encode_message(message)
        with self._write_lock:
            try:
                proc.stdin.write(data)
                proc.stdin.flush()
            except (OSError, ValueError) as exc:
                raise SessionClosed(f"Server stdin closed: {exc}") from exc

    def _abandon(self, request_id: int) -> None:
        with self._state_lock:
            self._pending.pop(request_id, None)

    def _cancel(self, request_id: int) -> None:
        with self._state_lock:
            entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        method, future = entry
        try:
            self._write(notification_message("$/cancelRequest", {"id": request_id}))
        except SessionClosed:
            pass
        future.set_exception(RequestCancelled(f"{method} was cancelled"))

    def _fail_pending(self, error: TraverseError) -> None:
        with self._state_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for _method, future in pending:
            if not future.done():
                future.set_exception(error)

    def _read_loop(self, proc: subprocess.Popen, generation: int) -> None:
        decoder = FrameDecoder()
        stream = proc.stdout
        read = getattr(stream, "read1", None) or stream.read
        try:
            while True:
                chunk = read(_READ_SIZE)
                if not chunk:
                    break
                for item in decoder.feed(chunk):
                    self._dispatch(item, proc)
        except (OSError, ValueError) as exc:
            logger.debug(f"Server stdout reader stopped: {exc}")
        finally:
            if decoder.buffered:
                logger.warning(f"Discarding {decoder.buffered} bytes of incomplete frame at end of stream")
            self._on_stream_closed(proc, generation)

    def _stderr_loop(self, proc: subprocess.Popen) -> None:
        stream = proc.stderr
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._stderr_tail.append(line)
                    logger.debug(f"[server] {line}")
        except (OSError, ValueError):
            return

    def _dispatch(self, item: JSONObject | MalformedFrame, proc: subprocess.Popen) -> None:
        if isinstance(item, MalformedFrame):
            self._on_malformed(item.reason, proc)
            return
        has_id = "id" in item and item.get("id") is not None
        method = item.get("method")
        if isinstance(method, str) and has_id:
            logger.debug(f"Answering server request {method} with null result")
            try:
                self._write(response_message(item["id"], None))
            except SessionClosed as exc:
                logger.debug(f"Unable to answer server request {method}: {exc}")
            self._malformed_streak = 0
            return
        if isinstance(method, str):
            self._on_notification(item)
            self._malformed_streak = 0
            return
        if not has_id:
            self._on_malformed("message has neither id nor method", proc)
            return
        self._malformed_streak = 0
        request_id = item["id"]
        with self._state_lock:
            entry = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if entry is None:
            logger.warning(f"Discarding response with unmatched id {request_id!r}")
            return
        request_method, future = entry
        if future.done():
            return
        if "error" in item and item["error"] is not None:
            future.set_exception(ServerError(request_method, item["error"]))
        else:
            future.set_result(item.get("result"))

    def _on_notification(self, message: JSONObject) -> None:
        method = message.get("method")
        params = message.get("params")
        if method in ("window/logMessage", "window/showMessage") and isinstance(params, dict):
            level = _LOG_MESSAGE_LEVELS.get(params.get("type"), "INFO")
            logger.log(level, f"[server] {params.get('message', '')}")
        else:
            logger.debug(f"Server notification {method}")
        if self.notification_callback is not None:
            self.notification_callback(message)

    def _on_malformed(self, reason: str, proc: subprocess.Popen) -> None:
        self._malformed_streak += 1
        logger.warning(f"Discarding malformed frame ({reason})")
        if self._malformed_streak <= self.malformed_frame_limit:
            return
        logger.error(
            f"{self._malformed_streak} consecutive malformed frames; terminating desynchronized server"
        )
        self._fail_pending(ProtocolError("Server stream desynchronized"))
        try:
            proc.kill()
        except OSError as exc:
            logger.debug(f"Unable to kill desynchronized server: {exc}")

    def _on_stream_closed(self, proc: subprocess.Popen, generation: int) -> None:
        if generation != self._generation:
            return
        code = proc.poll()
        # Mark the crash before waking waiters so they never observe RUNNING.
        with self._state_lock:
            if self._state in (SessionState.RUNNING, SessionState.STARTING):
                self._state = SessionState.CRASHED
                logger.error(f"Server process exited unexpectedly (code {code})")
        self._fail_pending(SessionClosed(f"Server process exited (code {code})"))

    def stop(self) -> None:
        with self._lifecycle_lock:
            proc = self._proc
            if proc is None:
                self._set_state(SessionState.IDLE)
                return
            graceful = self.state is SessionState.RUNNING
            self._set_state(SessionState.STOPPING)
            self._teardown(graceful=graceful)
            self._set_state(SessionState.IDLE)
            logger.info("Server stopped")

    def _teardown(self, *, graceful: bool) -> None:
        proc = self._proc
        if proc is None:
            return
        self._fail_pending(SessionClosed("Session stopping"))
        if graceful and proc.poll() is None:
            try:
                self._send("shutdown", None, allowed=(SessionState.STOPPING,)).result(timeout=self.stop_grace)
                self._write(notification_message("exit"))
            except TraverseError as exc:
                logger.debug(f"Graceful shutdown skipped: {exc}")
        if proc.stdin is not None:
            try:
                proc.stdin.close()
            except OSError:
                pass
        try:
            proc.wait(timeout=self.stop_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Server ignored shutdown; terminating")
            proc.terminate()
            try:
                proc.wait(timeout=self.stop_grace)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=self.stop_grace)
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        self._threads = []
        self._proc = None

    def restart(self) -> None:
        with self._lifecycle_lock:
            launch = self._launch
            if launch is None:
                raise StartError("Server has never been started; nothing to restart")
            self.stop()
            self._start(launch)
