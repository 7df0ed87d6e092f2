import logging
from typing import Dict, Any, Optional
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
import uvicorn
from threading import Thread

logger = logging.getLogger("manga_worker")


class HealthResponse(BaseModel):
    ok: bool
    status: str
    workers: int = 0
    in_flight: int = 0


class EnqueueResponse(BaseModel):
    file_id: str
    queued: bool


class StatusResponse(BaseModel):
    file_id: str
    status: str
    attempts: int
    error_message: Optional[str] = None
    queue_state: Optional[str] = None


class HealthServer:
    def __init__(self, service, port: int = 8000):
        self.service = service
        self.port = port
        self.app = FastAPI(title="Manga Worker API")
        self.setup_routes()
        self.server: Optional[uvicorn.Server] = None
        self.server_thread = None
        self.running = False

    def _require_pool(self):
        pool = getattr(self.service, "pool", None)
        if pool is None:
            raise HTTPException(status_code=503, detail="Worker pool not initialized")
        return pool

    def setup_routes(self):
        """Setup API routes"""

        @self.app.get("/healthz", response_model=HealthResponse)
        def health_check():
            """Health check endpoint"""
            pool = self._require_pool()
            stats = pool.get_stats()
            if not stats["running"] or stats["draining"]:
                raise HTTPException(status_code=503, detail="Worker pool is not accepting work")
            return HealthResponse(
                ok=True,
                status="healthy",
                workers=stats["workers"],
                in_flight=stats["in_flight"],
            )

        @self.app.post("/files/{file_id}/enqueue", response_model=EnqueueResponse)
        def enqueue_file(file_id: str):
            """Queue a stored file for processing; repeated calls are no-ops"""
            pool = self._require_pool()
            return EnqueueResponse(file_id=file_id, queued=pool.enqueue(file_id))

        @self.app.get("/files/{file_id}/status", response_model=StatusResponse)
        def file_status(file_id: str):
            """Read-only status snapshot for a file"""
            pool = self._require_pool()
            snapshot = pool.get_status(file_id)
            if snapshot is None:
                raise HTTPException(status_code=404, detail=f"File {file_id} not found")
            return StatusResponse(
                file_id=snapshot.file_id,
                status=snapshot.status.value,
                attempts=snapshot.attempts,
                error_message=snapshot.error_message,
                queue_state=snapshot.queue_state.value if snapshot.queue_state else None,
            )

        @self.app.get("/stats")
        def get_stats() -> Dict[str, Any]:
            """Get worker statistics"""
            try:
                return self.service.get_stats()
            except Exception as e:
                logger.error(f"Error getting stats: {str(e)}")
                raise HTTPException(status_code=500, detail=f"Error fetching stats: {str(e)}")

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        self.server = uvicorn.Server(uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",  # Reduce uvicorn logging
            access_log=False
        ))

        def run_server():
            try:
                self.server.run()
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"Health server started on port {self.port}")

    def stop(self):
        """Stop the HTTP server"""
        if self.server:
            self.server.should_exit = True
        self.running = False
        logger.info("Health server stopped")


def start_health_server(service) -> Optional[HealthServer]:
    """Start the health server if enabled"""
    if service.config.ENABLE_HTTP_SERVER:
        server = HealthServer(service, service.config.HTTP_PORT)
        server.start()
        return server
    return None
