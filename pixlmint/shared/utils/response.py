from typing import Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ApiResponse(BaseModel):
    success: bool


class SuccessResponse(ApiResponse):
    success: bool = True


class ErrorResponse(ApiResponse):
    success: bool = False
    error: str
    message: str
    service: Optional[str] = None


def error_response(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))
