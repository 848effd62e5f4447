"""HTTP surface for detection, import, history and export."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from Sheetbridge import repos
from Sheetbridge.adapters.registry import AdapterRegistry
from Sheetbridge.config import Settings
from Sheetbridge.detector import Detector
from Sheetbridge.errors import (
    AdapterConfigurationError,
    AdapterNotFoundError,
    AdapterTransportError,
    AdapterUnavailableError,
    CapabilityNotSupportedError,
    DetectionFailedError,
    ImportFailedError,
    RateLimitExceeded,
    SecurityRejection,
)
from Sheetbridge.exporter import load_character_import
from Sheetbridge.schemas import (
    DetectResponse,
    ImportDetail,
    ImportHistoryOut,
    ImportHistoryPage,
    ImportResult,
    MasterDataImportOut,
)
from Sheetbridge.security import RateLimiters, read_limited, validate_json_depth
from Sheetbridge.services.import_service import ImportService
from Sheetbridge.validation import Validator

log = structlog.get_logger()

USER_HEADER = "X-User-Id"
MAX_PER_PAGE = 100
DEFAULT_PER_PAGE = 20


@dataclass
class ImporterState:
    """Everything the routes need, stored on ``app.state.importer``."""

    settings: Settings
    registry: AdapterRegistry
    detector: Detector
    import_service: ImportService
    validator: Validator
    limiters: RateLimiters
    sessionmaker: async_sessionmaker[AsyncSession]


def _state(request: Request) -> ImporterState:
    return request.app.state.importer


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


async def current_user(x_user_id: str | None = Header(default=None, alias=USER_HEADER)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_user_id.strip()


def rate_limited(kind: str):
    async def _check(request: Request, user_id: str = Depends(current_user)) -> str:
        getattr(_state(request).limiters, kind).check(user_id)
        return user_id

    return _check


async def _read_upload(state: ImporterState, file: UploadFile) -> bytes:
    data = await read_limited(file, state.settings.max_upload_bytes, declared_size=file.size)
    validate_json_depth(data, state.settings.max_json_depth)
    return data


router = APIRouter(prefix="/api/import", tags=["import"])


@router.post("/detect", response_model=DetectResponse)
async def detect_format(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Depends(rate_limited("detect")),
):
    state = _state(request)
    data = await _read_upload(state, file)
    try:
        result = await state.detector.detect_format(data, file.filename or "")
    except DetectionFailedError as exc:
        return _error(
            400,
            "Could not reliably detect format",
            confidence=exc.best_confidence,
            hint="Please specify adapter_id explicitly",
        )
    adapter = await state.registry.get(result.adapter_id)
    log.info(
        "api.detect",
        user_id=user_id,
        adapter_id=result.adapter_id,
        confidence=result.confidence,
        method=result.method,
    )
    return DetectResponse(
        adapter_id=result.adapter_id,
        confidence=result.confidence,
        method=result.method,
        suggested_adapter_name=adapter.name if adapter else "",
    )


@router.post("/import", response_model=ImportResult)
async def import_character(
    request: Request,
    file: UploadFile = File(...),
    adapter_id: str | None = Form(default=None),
    adapter_id_query: str | None = Query(default=None, alias="adapter_id"),
    user_id: str = Depends(rate_limited("import_")),
):
    state = _state(request)
    data = await _read_upload(state, file)
    filename = file.filename or ""

    chosen = adapter_id_query or adapter_id
    try:
        detection = await state.detector.detect_format(data, filename, adapter_id=chosen)
    except DetectionFailedError as exc:
        return _error(
            400,
            "Could not reliably detect format",
            confidence=exc.best_confidence,
            hint="Please specify adapter_id explicitly",
        )
    except (AdapterNotFoundError, AdapterUnavailableError) as exc:
        return _error(503, f"Adapter unavailable: {exc}")

    try:
        bmrt = await state.registry.import_character(detection.adapter_id, data, filename)
    except (AdapterNotFoundError, AdapterUnavailableError) as exc:
        return _error(503, f"Adapter unavailable: {exc}")
    except CapabilityNotSupportedError as exc:
        return _error(400, str(exc))
    except AdapterTransportError as exc:
        return _error(422, f"Import failed: {exc}", adapter_status=exc.status_code)

    validation = state.validator.validate(bmrt)
    if not validation.valid:
        return _error(
            400,
            "Character validation failed",
            errors=[e.model_dump() for e in validation.errors],
        )

    source_format = None
    if bmrt.source_metadata is not None and bmrt.source_metadata.source_format:
        source_format = bmrt.source_metadata.source_format
    try:
        result = await state.import_service.import_character(
            bmrt.as_import(),
            user_id=user_id,
            adapter_id=detection.adapter_id,
            raw_data=data,
            filename=filename,
            source_format=source_format,
            bmrt_version=bmrt.bmrt_version,
            warnings=validation.warnings,
        )
    except ImportFailedError as exc:
        return _error(500, f"Failed to create character: {exc}", import_id=exc.import_id)
    return result


@router.get("/adapters")
async def list_adapters(
    request: Request,
    include_unhealthy: bool = Query(default=False),
    _user_id: str = Depends(current_user),
):
    registry = _state(request).registry
    adapters = await (registry.get_all() if include_unhealthy else registry.get_healthy())
    return {"adapters": [a.model_dump(mode="json") for a in adapters], "count": len(adapters)}


@router.get("/history", response_model=ImportHistoryPage)
async def list_history(
    request: Request,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=DEFAULT_PER_PAGE, ge=1),
    user_id: str = Depends(current_user),
):
    per_page = min(per_page, MAX_PER_PAGE)
    async with _state(request).sessionmaker() as s:
        rows, total = await repos.list_import_history(s, user_id=user_id, page=page, per_page=per_page)
        histories = [ImportHistoryOut.model_validate(r) for r in rows]
    return ImportHistoryPage(histories=histories, total=total, page=page, per_page=per_page)


@router.get("/history/{import_id}", response_model=ImportDetail)
async def get_history(request: Request, import_id: int, user_id: str = Depends(current_user)):
    async with _state(request).sessionmaker() as s:
        history = await repos.get_import_history(s, import_id=import_id, user_id=user_id)
        if history is None:
            raise HTTPException(status_code=404, detail="Import not found")
        entries = await repos.list_master_data_imports(s, import_history_id=history.id)
        return ImportDetail(
            history=ImportHistoryOut.model_validate(history),
            master_data_imports=[MasterDataImportOut.model_validate(e) for e in entries],
        )


def _attachment_name(name: str, adapter_id: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_") or "character"
    return f"{safe}_{adapter_id}.json"


@router.post("/export/{character_id}")
async def export_character(
    request: Request,
    character_id: int,
    adapter_id: str | None = Query(default=None),
    user_id: str = Depends(rate_limited("export")),
):
    state = _state(request)
    async with state.sessionmaker() as s:
        character = await repos.get_character_for_user(s, character_id=character_id, user_id=user_id)
        if character is None:
            raise HTTPException(status_code=404, detail="Character not found or access denied")
        if not adapter_id:
            history = await repos.latest_successful_import(s, character_id=character_id)
            if history is None:
                return _error(
                    400,
                    "No adapter specified and character has no import history",
                    hint="Specify adapter_id query parameter",
                )
            adapter_id = history.adapter_id
        canonical = await load_character_import(s, character)

    adapter = await state.registry.get(adapter_id)
    if adapter is None or not adapter.healthy:
        available = [a.id for a in await state.registry.get_healthy()]
        reason = "not available" if adapter is None else "currently unhealthy"
        return _error(409, f"Adapter '{adapter_id}' {reason}", available_adapters=available)

    try:
        payload = await state.registry.export_character(adapter_id, canonical)
    except CapabilityNotSupportedError as exc:
        return _error(400, str(exc))
    except AdapterUnavailableError as exc:
        return _error(409, str(exc), available_adapters=[a.id for a in await state.registry.get_healthy()])
    except AdapterTransportError as exc:
        return _error(422, f"Export failed: {exc}", adapter_status=exc.status_code)

    log.info("api.export", user_id=user_id, character_id=character_id, adapter_id=adapter_id)
    return Response(
        content=payload,
        media_type="application/json",
        headers={
            "Content-Disposition": f"attachment; filename={_attachment_name(character.name, adapter_id)}"
        },
    )


def _security_handler(request: Request, exc: SecurityRejection) -> JSONResponse:
    headers = None
    extra: dict[str, Any] = {}
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(int(exc.retry_after))}
        extra["retry_after"] = exc.retry_after
    log.warning("api.security.rejected", path=request.url.path, reason=str(exc))
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc), **extra},
        headers=headers,
    )


def _configuration_handler(request: Request, exc: AdapterConfigurationError) -> JSONResponse:
    status = 404 if isinstance(exc, AdapterNotFoundError) else 400
    return _error(status, str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SecurityRejection, _security_handler)
    app.add_exception_handler(AdapterConfigurationError, _configuration_handler)
