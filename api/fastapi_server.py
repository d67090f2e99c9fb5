import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from ingest.sampler import CapacityExceeded
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: Dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as exc:
                logger.debug("Dropping websocket client after send failure: %s", exc)
                self.disconnect(connection)


def _now() -> str:
    return datetime.utcnow().isoformat()


def create_app(system=None) -> FastAPI:
    """Build the API around ``system``; without one, the app owns a ``MigrationSniper``."""
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.system is None
        if owned:
            from main import MigrationSniper
            app.state.system = MigrationSniper()
        sniper = app.state.system
        subscription = sniper.dispatcher.subscribe(
            '*',
            lambda event: manager.broadcast(event.to_dict()),
            name='websocket',
        )
        if owned:
            await sniper.start()
        try:
            yield
        finally:
            await sniper.dispatcher.unsubscribe(subscription)
            if owned:
                await sniper.stop()

    app = FastAPI(title="Migration Sniper API", version="1.0.0", lifespan=lifespan)
    app.state.system = system
    app.state.connections = manager

    api_cfg = config.get('api') or {}
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(api_cfg.get('cors_origins') or []),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _system():
        sniper = app.state.system
        if sniper is None:
            raise HTTPException(status_code=503, detail="Sniper not initialized")
        return sniper

    @app.get("/")
    async def root():
        sniper = app.state.system
        return {
            "service": "Migration Sniper",
            "version": "1.0.0",
            "status": "running" if sniper and sniper.running else "stopped"
        }

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health():
        sniper = app.state.system
        return {
            "status": "healthy",
            "timestamp": _now(),
            "system_running": sniper.running if sniper else False
        }

    @app.get("/api/status")
    async def get_status():
        return {**_system().get_status(), "timestamp": _now()}

    @app.get("/api/assets")
    async def get_assets():
        sniper = _system()
        assets = sniper.get_monitored_assets()
        statuses = sniper.get_threshold_statuses()
        for asset in assets:
            status = statuses.get(asset['address'])
            asset['status'] = status.to_dict() if status else None
        return {"assets": assets, "count": len(assets), "timestamp": _now()}

    @app.post("/api/assets/{asset_id}")
    async def add_asset(asset_id: str):
        try:
            asset = await _system().add_asset(asset_id)
        except CapacityExceeded as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"asset": asset.to_dict(), "timestamp": _now()}

    @app.delete("/api/assets/{asset_id}")
    async def remove_asset(asset_id: str):
        removed = await _system().remove_asset(asset_id)
        return {"id": asset_id, "removed": removed, "timestamp": _now()}

    def _positions(items) -> Dict:
        out = [p.to_dict() for p in items]
        return {"positions": out, "count": len(out), "timestamp": _now()}

    @app.get("/api/positions/active")
    async def get_active_positions():
        return _positions(_system().list_active_positions())

    @app.get("/api/positions/completed")
    async def get_completed_positions():
        return _positions(_system().list_completed_positions())

    @app.get("/api/positions/failed")
    async def get_failed_positions():
        return _positions(_system().list_failed_positions())

    @app.get("/api/positions/stats")
    async def get_position_stats():
        return {**_system().get_position_stats(), "timestamp": _now()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                # Clients only listen; reads detect disconnects.
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


def _serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    import uvicorn
    api_cfg = config.get('api') or {}
    uvicorn.run(
        create_app(),
        host=host or api_cfg.get('host', '0.0.0.0'),
        port=int(port or api_cfg.get('port', 8000)),
        log_level="info"
    )


if __name__ == "__main__":
    setup_logging(config.monitoring.get('log_level', 'INFO') if config.get('monitoring') else 'INFO')
    _serve()
