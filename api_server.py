# FastAPI Read-Model Server for the Fleet Dashboard
# File: api_server.py

"""
Serves the live fleet view to a rendering surface.

Run with: uvicorn api_server:app --port 8000
      or: python main.py serve
"""

from contextlib import asynccontextmanager
from typing import List, Optional, Any, Dict
import asyncio
import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import DashboardConfig
from main import DashboardSession
from projection import FleetView, delivery_to_dict, drone_to_dict

logger = logging.getLogger(__name__)

# ============================================================================
# RESPONSE MODELS
# ============================================================================

class SystemModel(BaseModel):
    active_drones: int
    available_drones: Optional[int] = None
    active_simulations: Optional[int] = None

class WaypointMarkerModel(BaseModel):
    position: List[float]
    step_index: int
    completed: bool

class DroneModel(BaseModel):
    id: str
    display_number: int
    status: Optional[str] = None
    position: Optional[List[float]] = None
    progress: Optional[float] = None
    batch: Optional[Dict[str, Any]] = None
    capacity: Optional[Dict[str, float]] = None
    delivery_id: Optional[int] = None
    removing: bool = False
    planned_path: Optional[List[List[float]]] = None
    waypoint_markers: List[WaypointMarkerModel] = []
    fading_path: Optional[List[List[float]]] = None

class DeliveryModel(BaseModel):
    drone_id: str
    delivery_id: Optional[int] = None
    status: str
    message: Optional[str] = None

class FleetModel(BaseModel):
    version: int
    connected: bool
    system: SystemModel
    drones: List[DroneModel]
    recent_deliveries: List[DeliveryModel]

# ============================================================================
# VIEWER HUB
# ============================================================================

class ViewerHub:
    """WebSocket viewers of the fleet view"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self._changed = asyncio.Event()
        self._pusher: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._latest: Optional[FleetView] = None

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"Viewer connected ({len(self.active_connections)} total)")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"Viewer disconnected ({len(self.active_connections)} total)")

    def on_view(self, view: FleetView):
        """Projection listener; coalesces bursts into one push"""
        self._latest = view
        if self._loop is not None:
            # Ingest may run outside the server loop (tests, embedding)
            self._loop.call_soon_threadsafe(self._changed.set)

    def start(self):
        self._loop = asyncio.get_running_loop()
        self._pusher = self._loop.create_task(self._push_loop())

    async def stop(self):
        if self._pusher is not None:
            self._pusher.cancel()
            await asyncio.gather(self._pusher, return_exceptions=True)
            self._pusher = None

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.info(f"Dropping viewer after send failure: {e}")
                self.disconnect(connection)

    async def _push_loop(self):
        while True:
            await self._changed.wait()
            self._changed.clear()
            if self._latest is not None and self.active_connections:
                await self.broadcast(self._latest.to_dict())

# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(session: Optional[DashboardSession] = None,
               config: Optional[DashboardConfig] = None,
               connect: bool = True) -> FastAPI:
    """
    Build the API around a dashboard session

    Args:
        session: Existing session (tests inject one); created from config otherwise
        config: Used when no session is given (defaults to FLEET_* environment)
        connect: Start the session's stream on startup
    """
    hub = ViewerHub()
    state: Dict[str, DashboardSession] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        current = session or DashboardSession(config or DashboardConfig.from_env())
        state['session'] = current
        current.projection.add_listener(hub.on_view)
        hub.start()
        if connect:
            current.start()
        logger.info("✅ Fleet read-model API started")
        try:
            yield
        finally:
            await hub.stop()
            if connect:
                await current.shutdown()
            logger.info("🛑 Fleet read-model API stopped")

    app = FastAPI(
        title="Drone Fleet Dashboard API",
        description="Live read model of the drone delivery fleet",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def current_session() -> DashboardSession:
        if 'session' not in state:
            raise HTTPException(status_code=503, detail="Session not started")
        return state['session']

    @app.get("/api/fleet", response_model=FleetModel)
    async def get_fleet():
        """Full fleet view"""
        return current_session().view().to_dict()

    @app.get("/api/fleet/{drone_id}", response_model=DroneModel)
    async def get_drone(drone_id: str):
        """One tracked drone with its geometry"""
        drone = current_session().view().drone(drone_id)
        if drone is None:
            raise HTTPException(status_code=404, detail="Drone not tracked")
        return drone_to_dict(drone)

    @app.get("/api/deliveries", response_model=List[DeliveryModel])
    async def get_deliveries(limit: int = 50):
        """Recent delivery outcomes, newest first"""
        deliveries = current_session().view().recent_deliveries[:max(limit, 0)]
        return [delivery_to_dict(d) for d in deliveries]

    @app.get("/api/status")
    async def get_status():
        """Connection state, metrics and last liveness report"""
        current = current_session()
        connection = current.connection
        report = connection.liveness.last_report
        return {
            "state": connection.state.value,
            "connected": connection.connected,
            "reconnect_attempt": connection.attempt,
            "last_error": connection.last_error,
            "liveness": report.to_dict() if report else None,
            "metrics": current.metrics.get_all_metrics(),
        }

    @app.websocket("/ws/fleet")
    async def fleet_socket(websocket: WebSocket):
        """Push the fleet view on every change"""
        await hub.connect(websocket)
        try:
            await websocket.send_json(current_session().view().to_dict())
            while True:
                # Viewers do not send anything meaningful; reading detects disconnects
                await websocket.receive_text()
        except WebSocketDisconnect:
            hub.disconnect(websocket)

    return app


app = create_app()
