from datetime import datetime, timezone

from fastapi.responses import JSONResponse


def error_response(message, status=400, code=None, details=None):
    content = {
        "error": message,
        "code": code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status, content=content)
