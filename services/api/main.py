"""API service for flow and sequence runs."""

from fastapi import FastAPI
from services.api.routes.runs import router as runs_router
from services.api.routes.proxy import router as proxy_router
from services.api.middleware import CorrelationIdMiddleware
from shared.logging_config import setup_logging

setup_logging("api")

app = FastAPI(title="API Flow Execution Engine", version="1.0.0")
app.add_middleware(CorrelationIdMiddleware)

app.include_router(runs_router, tags=["Runs"])
app.include_router(proxy_router, tags=["Proxy"])


@app.get("/")
async def root():
    return {"service": "api", "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
