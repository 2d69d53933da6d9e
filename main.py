# Fleet Dashboard - Real-Time State Synchronization
# File: main.py

"""
Installation:
pip install -e .            (websockets, pydantic, fastapi, uvicorn)

Run headless (logs a fleet summary periodically):
    python main.py --url ws://localhost:8080/ws/websocket

Serve the read model for a rendering surface:
    python main.py serve --port 8000
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import List, Optional

from config import DashboardConfig
from connection import ConnectionManager, TransportFactory
from decoder import UpdateDecoder
from event_router import WILDCARD, EventRouter
from fleet_state import EntityStore, FleetStateReconciler
from geometry import GeometryStore, GeometryTracker
from monitoring import MetricsCollector
from projection import FleetView, ViewProjection
from scheduler import AsyncioScheduler, ScheduledTask, Scheduler
from stomp import Frame

logger = logging.getLogger(__name__)

# ============================================================================
# SESSION
# ============================================================================

class DashboardSession:
    """
    One dashboard session: stream, decoder, registries and read model.

    Frames flow connection -> decoder -> router -> (reconciler, tracker) ->
    projection, all on the event loop in arrival order.
    """

    def __init__(self, config: DashboardConfig, scheduler: Optional[Scheduler] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 entity_store: Optional[EntityStore] = None,
                 geometry_store: Optional[GeometryStore] = None):
        self.config = config
        self.scheduler = scheduler or AsyncioScheduler()
        self.metrics = MetricsCollector()

        self.connection = ConnectionManager(config, self.scheduler, transport_factory, self.metrics)
        self.decoder = UpdateDecoder(config.topics, self.scheduler.now, self.metrics)
        self.router = EventRouter(self.metrics)

        self.reconciler = FleetStateReconciler(
            entity_store or EntityStore(), self.scheduler,
            grace_period=config.grace_period,
            delivery_history=config.delivery_history,
            metrics=self.metrics,
        )
        self.tracker = GeometryTracker(
            geometry_store or GeometryStore(), self.scheduler,
            grace_period=config.grace_period,
            metrics=self.metrics,
        )
        self.projection = ViewProjection(self.reconciler, self.tracker,
                                         connected=lambda: self.connection.connected)

        # Both consumers see the raw event stream, reconciler first
        self.router.subscribe(WILDCARD, self.reconciler.apply)
        self.router.subscribe(WILDCARD, self.tracker.apply)
        self.connection.add_status_listener(self._on_connectivity)

        self.started = False
        self.stopped = False
        self._summary_timer: Optional[ScheduledTask] = None

    def start(self, summary: bool = False):
        """Subscribe all topics and open the stream (call on the event loop)"""
        if self.started:
            return
        self.started = True
        for topic in self.config.topics.as_dict().values():
            self.connection.subscribe(topic, self._frame_handler(topic))
        if summary:
            self._summary_timer = self.scheduler.call_every(self.config.summary_interval, self.log_summary)
        self.connection.connect()

    async def shutdown(self):
        """Cancel every timer and close the stream; no state changes afterwards"""
        if self.stopped:
            return
        self.stopped = True
        await self.connection.shutdown()
        self.router.close()
        self.scheduler.close()
        logger.info("Dashboard session stopped")

    def view(self) -> FleetView:
        return self.projection.current()

    def ingest(self, topic: str, body: str):
        """Decode one frame body and fan it out"""
        if self.stopped:
            return
        event = self.decoder.decode(topic, body)
        if event is not None:
            self.router.publish(event)

    def log_summary(self):
        view = self.view()
        status = 'connected' if view.connected else self.connection.state.value
        logger.info(f"Fleet: {len(view.drones)} tracked, "
                    f"{view.system.active_drones} active / {view.system.available_drones} available "
                    f"[{status}]")
        for drone in view.drones:
            stop = ''
            if drone.batch:
                stop = f" stop {drone.batch.step_index}/{drone.batch.step_count}"
            progress = f"{drone.progress * 100:.0f}%" if drone.progress is not None else '-'
            logger.info(f"  #{drone.display_number} {drone.id}: {drone.status} {progress}{stop}")

    def _frame_handler(self, topic: str):
        def handle(frame: Frame):
            self.ingest(topic, frame.body)
        return handle

    def _on_connectivity(self, connected: bool):
        logger.info(f"Connectivity signal: {'connected' if connected else 'disconnected'}")
        self.projection.refresh()

# ============================================================================
# CLI
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drone fleet dashboard state sync")
    parser.add_argument('command', nargs='?', default='run', choices=['run', 'serve'],
                        help="run: headless session with periodic summary; serve: read-model API")
    parser.add_argument('--url', help="STOMP WebSocket URL")
    parser.add_argument('--log-level', help="DEBUG, INFO, WARNING, ...")
    parser.add_argument('--summary-interval', type=float, help="Seconds between fleet summaries")
    parser.add_argument('--host', help="API bind host (serve)")
    parser.add_argument('--port', type=int, help="API port (serve)")
    return parser


def config_from_args(args: argparse.Namespace) -> DashboardConfig:
    config = DashboardConfig.from_env()
    overrides = {
        'ws_url': args.url,
        'log_level': args.log_level,
        'summary_interval': args.summary_interval,
        'api_host': args.host,
        'api_port': args.port,
    }
    return replace(config, **{k: v for k, v in overrides.items() if v is not None}).validate()


async def run_headless(config: DashboardConfig):
    session = DashboardSession(config)
    session.start(summary=True)
    try:
        await asyncio.Event().wait()
    finally:
        await session.shutdown()


def main(argv: List[str] = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)

    logging.basicConfig(
        level=config.log_level.upper(),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    if args.command == 'serve':
        import uvicorn
        from api_server import create_app

        uvicorn.run(create_app(config=config), host=config.api_host, port=config.api_port)
        return 0

    try:
        asyncio.run(run_headless(config))
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
