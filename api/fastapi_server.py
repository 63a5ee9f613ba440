import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import config, load_settings
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)

orchestrator = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global orchestrator
    from main import TradingOrchestrator
    orchestrator = TradingOrchestrator(load_settings())
    task = asyncio.create_task(orchestrator.start())
    try:
        yield
    finally:
        if orchestrator:
            await orchestrator.stop()
        task.cancel()
        results = await asyncio.gather(task, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Orchestrator exited with error: %s", result)


app = FastAPI(title="Perpetuals Signal Orchestrator", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api['cors_origins'],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_orchestrator():
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


@app.get("/")
async def root():
    return {
        "service": "Perpetuals Signal Orchestrator",
        "version": "1.0.0",
        "status": "running" if orchestrator and orchestrator.running else "stopped",
        "mode": ("dry_run" if orchestrator.settings.dry_run else "live") if orchestrator else None,
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": orchestrator.running if orchestrator else False,
        "market_cycles": orchestrator.observer.cycles if orchestrator else 0,
        "consecutive_fetch_failures": orchestrator.observer.consecutive_failures if orchestrator else 0,
    }


@app.get("/signals")
async def get_signals():
    system = _require_orchestrator()
    signals = [s.to_dict() for s in system.signal_generator.get_active_signals()]
    return {"signals": signals, "count": len(signals), "timestamp": _now()}


@app.get("/positions")
async def get_positions():
    system = _require_orchestrator()
    positions = [p.to_dict() for p in system.position_manager.get_open_positions()]
    return {
        "positions": positions,
        "count": len(positions),
        "max": system.settings.max_concurrent_positions,
        "timestamp": _now(),
    }


@app.get("/stats")
async def get_stats():
    system = _require_orchestrator()
    return {
        "stats": system.position_manager.get_stats(),
        "report": system.status.final_report(),
        "timestamp": _now(),
    }


@app.get("/trades")
async def get_trades(limit: int = 100):
    system = _require_orchestrator()
    trades = system.position_manager.get_closed_trades()
    recent = trades[-limit:] if limit > 0 else trades
    return {
        "trades": [t.to_dict() for t in recent],
        "count": len(trades),
        "timestamp": _now(),
    }


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
