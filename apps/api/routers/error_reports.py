"""Client error reporting into the operator error log."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.error_log import record_error

router = APIRouter()


class ErrorReportRequest(BaseModel):
    error_type: str = Field(min_length=1, max_length=100)
    error_message: str = Field(min_length=1, max_length=4000)
    stack_trace: Optional[str] = Field(default=None, max_length=20000)
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    endpoint: Optional[str] = Field(default=None, max_length=500)


@router.post("")
async def report_error(
    request: ErrorReportRequest,
    _rate_limit: None = Depends(rate_limit("error_report", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    await record_error(
        request.error_type,
        request.error_message,
        severity=request.severity,
        user_id=auth.user_id,
        endpoint=request.endpoint,
        context={"source": "client", "stack_trace": request.stack_trace},
    )
    return {"success": True}
