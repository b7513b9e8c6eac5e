import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool

from backend.config import CONFIG_PATH, configure_logging, load_configuration
from backend.control_plane import ControlPlane
from metrics.fetch_live_metrics import MetricsFetchError


def create_app(control_plane: ControlPlane | None = None) -> FastAPI:
    """
    Build the admin API. Without an explicit control plane one is built from
    the configuration file and run for the lifetime of the application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.control_plane is None
        if owned:
            configure_logging()
            # ConfigError propagates and aborts startup
            app.state.control_plane = ControlPlane.from_configuration(load_configuration(CONFIG_PATH))
            app.state.control_plane.start()
        try:
            yield
        finally:
            if owned:
                app.state.control_plane.stop()

    app = FastAPI(title="Spanner Autoscaler", lifespan=lifespan)
    app.state.control_plane = control_plane

    @app.get("/metrics/latest")
    def latest_metrics(request: Request):
        """Latest Cloud Monitoring metrics for every instance in the monitoring project."""
        retriever = request.app.state.control_plane.metrics_retriever
        if retriever is None:
            raise HTTPException(status_code=500, detail="No monitoring project configured")
        try:
            return [m.to_dict() for m in retriever.latest_metrics()]
        except MetricsFetchError as e:
            logging.error(f"Metrics request failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/check", status_code=204)
    async def check(request: Request):
        """Run one scaling check synchronously."""
        scaler = request.app.state.control_plane.scaler
        try:
            await run_in_threadpool(scaler.perform_application_check)
        except Exception as e:
            logging.error(f"Scaling check error: {e}")
            logging.error(traceback.format_exc())
            raise HTTPException(status_code=500, detail=f"Internal error: {str(e)}")
        return Response(status_code=204)

    @app.get("/configuration")
    def configuration(request: Request):
        return request.app.state.control_plane.configuration.model_dump(mode="json")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
