"""Per-agent runner: one PTY session wired to the bus.

Started as ``python -m ptybus.daemon.runner`` with ``PTYBUS_SUBSCRIBER_ID``
(``type:session``) and optionally ``PTYBUS_PROJECT_ROOT`` in the environment.
"""
from __future__ import annotations

import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import BusError
from ..kernel.agents import CAPABILITIES, parse_agent_kind, resolve_command
from ..kernel.router import MessageRouter
from ..kernel.settings import PtySettings, load_settings
from ..paths import bus_paths, safe_name
from ..runners.controller import PtySessionController
from ..runners.distributor import OutputDistributor
from ..runners.headless import FallbackRunner, default_fallback
from ..runners.loop import SessionLoop
from ..runners.pty import spawn_pty
from ..runners.turns import TurnProtocolEngine
from ..util.obslog import setup_root_json_logging
from .server import ControlServer

logger = logging.getLogger("ptybus.runner")

LAUNCH_MODE = "internal-pty"


def split_subscriber(subscriber: str) -> Tuple[str, str]:
    agent_type, sep, session_id = str(subscriber or "").partition(":")
    if not sep or not agent_type or not session_id or ":" in session_id:
        raise ValueError(f"subscriber id must look like type:session, got {subscriber!r}")
    return agent_type, session_id


class AgentRunner:
    def __init__(
        self,
        project_root: Path,
        subscriber: str,
        *,
        router: Optional[MessageRouter] = None,
        settings: Optional[PtySettings] = None,
        loop: Optional[Any] = None,
        spawner: Callable[..., Any] = spawn_pty,
        fallback: Optional[FallbackRunner] = None,
        nickname: Optional[str] = None,
        serve_socket: bool = True,
    ) -> None:
        agent_type, session_id = split_subscriber(subscriber)
        self.agent_type = agent_type
        self.kind = parse_agent_kind(agent_type)
        self.project_root = Path(project_root)
        self.paths = bus_paths(self.project_root).ensure()
        self.router = router or MessageRouter(self.paths)
        self.settings = settings or load_settings(self.paths)
        self.session_id = session_id
        self.subscriber = subscriber
        self.nickname = nickname
        self.loop = loop or SessionLoop()

        command, args = resolve_command(self.kind)
        env: Dict[str, str] = {
            "PTYBUS_LAUNCH_MODE": LAUNCH_MODE,
            "PTYBUS_INTERNAL_PTY": "1",
            "PTYBUS_SUBSCRIBER_ID": subscriber,
            "PTYBUS_PROJECT_ROOT": str(self.project_root),
        }
        self.distributor = OutputDistributor(
            ring_bytes=self.settings.ring_buffer_bytes,
            cols=self.settings.cols,
            rows=self.settings.rows,
        )
        self.controller = PtySessionController(
            self.loop,
            command=command,
            args=args,
            cwd=self.project_root,
            env=env,
            capabilities=CAPABILITIES[self.kind],
            settings=self.settings,
            spawner=spawner,
            subscriber=subscriber,
        )
        self.controller.output_taps.append(self.distributor.feed)
        if fallback is None:
            fallback = default_fallback(self.kind, cwd=self.project_root)
        self.engine = TurnProtocolEngine(
            self.loop,
            self.controller,
            reply_sink=self._reply,
            settings=self.settings,
            fallback=fallback,
        )
        self.server: Optional[ControlServer] = None
        if serve_socket:
            self.server = ControlServer(
                self.loop,
                self.paths.socket_path(subscriber),
                controller=self.controller,
                distributor=self.distributor,
            )
        self._poll_timer = None
        self._heartbeat_timer = None
        self._stopped = False

    def _reply(self, target: str, message: str) -> None:
        self.router.send(target, message, self.subscriber)

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        result = self.router.join(
            self.session_id,
            self.agent_type,
            self.nickname,
            pid=os.getpid(),
            launch_mode=LAUNCH_MODE,
        )
        self.nickname = result.nickname
        if self.server is not None:
            self.server.start()
        self.controller.start()
        self._poll_timer = self.loop.call_later(0, self._poll)
        self._heartbeat_timer = self.loop.call_later(self.settings.heartbeat_interval, self._heartbeat)
        logger.info(f"runner started as {self.nickname}", extra={"subscriber": self.subscriber})

    def _poll(self) -> None:
        self._poll_timer = None
        if self._stopped:
            return
        try:
            events = self.router.drain(self.subscriber)
        except OSError as e:
            logger.warning(f"mailbox drain failed: {e}", extra={"subscriber": self.subscriber})
            events = []
        for ev in events:
            if ev.event != "message":
                logger.debug(f"ignoring {ev.event} event", extra={"subscriber": self.subscriber, "seq": ev.seq})
                continue
            self.engine.submit(ev.publisher, ev.message, seq=ev.seq)
        self._poll_timer = self.loop.call_later(self.settings.poll_interval, self._poll)

    def _heartbeat(self) -> None:
        self._heartbeat_timer = None
        if self._stopped:
            return
        try:
            self.router.registry.heartbeat(self.subscriber)
        except (OSError, BusError) as e:
            logger.warning(f"heartbeat failed: {e}", extra={"subscriber": self.subscriber})
        self._heartbeat_timer = self.loop.call_later(self.settings.heartbeat_interval, self._heartbeat)

    def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for handle in (self._poll_timer, self._heartbeat_timer):
            if handle is not None:
                handle.cancel()
        self.controller.stop()
        if self.server is not None:
            self.server.close()
        try:
            self.router.leave(self.subscriber)
        except OSError as e:
            logger.warning(f"leave failed: {e}", extra={"subscriber": self.subscriber})
        logger.info("runner stopped", extra={"subscriber": self.subscriber})
        self.loop.stop()

    def request_stop(self) -> None:
        """Thread-safe stop request."""
        self.loop.call_soon_threadsafe(self.shutdown)

    def run(self) -> None:
        self.start()
        try:
            self.loop.run_forever()
        finally:
            self.shutdown()
            self.loop.close()


def main() -> int:
    subscriber = os.environ.get("PTYBUS_SUBSCRIBER_ID", "").strip()
    project_root = Path(os.environ.get("PTYBUS_PROJECT_ROOT") or os.getcwd()).resolve()
    if not subscriber:
        print("PTYBUS_SUBSCRIBER_ID is required (type:session)", file=sys.stderr)
        return 2
    paths = bus_paths(project_root).ensure()
    setup_root_json_logging(component="runner", log_path=paths.run_dir / f"{safe_name(subscriber)}.log")
    try:
        runner = AgentRunner(project_root, subscriber)
    except ValueError as e:
        logger.error(str(e))
        print(str(e), file=sys.stderr)
        return 2

    def _signal_handler(signum: int, frame: Any) -> None:
        runner.request_stop()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)
    runner.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
