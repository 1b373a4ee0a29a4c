from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import Response

from sunrise.api.context import get_route_logger
from sunrise.api.deps import get_ip

router = APIRouter(prefix="/api", tags=["security"])

REPORT_FIELDS = {
    "documentUri": "document-uri",
    "violatedDirective": "violated-directive",
    "effectiveDirective": "effective-directive",
    "blockedUri": "blocked-uri",
    "sourceFile": "source-file",
    "lineNumber": "line-number",
    "columnNumber": "column-number",
    "originalPolicy": "original-policy",
}


@router.post("/csp-report", status_code=204)
async def csp_report(request: Request):
    """Browsers POST violation reports here; always answer 204."""
    log = get_route_logger(request)
    try:
        limiter = request.app.state.rate_limiters.get("csp_report")
        if not limiter.check(get_ip(request)).success:
            return Response(status_code=204)

        body = await request.json()
        report = body.get("csp-report") if isinstance(body, dict) else None
        if not isinstance(report, dict):
            return Response(status_code=204)

        meta = {name: report.get(key) for name, key in REPORT_FIELDS.items()}
        meta["userAgent"] = request.headers.get("user-agent")
        log.warn("CSP Violation", meta)
    except Exception as e:
        log.error("Failed to process CSP report", e)
    return Response(status_code=204)


@router.options("/csp-report", status_code=204)
def csp_report_options():
    return Response(
        status_code=204,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        },
    )
