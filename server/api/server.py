"""
FastAPI server that exposes the approval broker to human approvers.

Agents running in this process raise approval requests on the default
broker; approvers list, inspect and resolve them through `/api/approvals`.
"""

from __future__ import annotations

import logging
from typing import Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from server.api.routes_approvals import router as approvals_router
from shared.run_context import RunLogIdFilter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] run_id=%(run_log_id)s %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RunLogIdFilter())
logger = logging.getLogger(__name__)

# Quiet noisy access logs
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

app = FastAPI(title="Bounded Agent Approval API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:5174",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(approvals_router)
logger.info("API initialized")


@app.get("/healthz")
def healthz() -> Dict[str, str]:
    return {"status": "ok"}
