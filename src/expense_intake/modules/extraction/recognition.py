from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any

import httpx

from expense_intake.core.config import Settings, settings
from expense_intake.core.logging import get_logger, log_event
from expense_intake.core.tracing import DecisionTracer, default_tracer
from expense_intake.modules.ingestion.errors import IngestionError, RecognitionFailed

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecognitionRequest:
    body: bytes
    filename: str
    mime_type: str
    storage_key: str
    signed_url: str
    account_id: str | None = None
    project_ref: str | None = None
    notes: str | None = None


class FallbackDecision(str, enum.Enum):
    RETRY_LEGACY = "retry_legacy"
    PROPAGATE = "propagate"


def decide_fallback(error: IngestionError, config: Settings = settings) -> FallbackDecision:
    if isinstance(error, RecognitionFailed) and config.recognition_legacy_enabled:
        return FallbackDecision.RETRY_LEGACY
    return FallbackDecision.PROPAGATE


def run_recognition(
    request: RecognitionRequest,
    *,
    config: Settings = settings,
    tracer: DecisionTracer | None = None,
) -> dict[str, Any]:
    tracer = tracer or default_tracer
    try:
        return recognize_document(request, config=config)
    except RecognitionFailed as e:
        decision = decide_fallback(e, config)
        tracer.record(
            "recognition.fallback",
            decision=decision.value,
            error=e.message,
            filename=request.filename,
        )
        if decision == FallbackDecision.PROPAGATE:
            raise
        log_event(
            logger,
            "recognition.legacy.start",
            filename=request.filename,
            storage_key=request.storage_key,
        )
        return recognize_document_legacy(request, config=config)


def recognize_document(
    request: RecognitionRequest, *, config: Settings = settings
) -> dict[str, Any]:
    """
    Send the document to the recognition service.

    The response is a JSON object with a `classification` hint and the
    extracted fields under `extraction`/`data`; its keys are resolved later by
    the normalizer, so only the transport and JSON shape are checked here.
    """
    form: dict[str, str] = {
        "file_url": request.signed_url,
        "mime_type": request.mime_type,
        "provider": config.recognition_provider,
    }
    if request.account_id:
        form["account_id"] = request.account_id
    if request.project_ref:
        form["project_code_id"] = request.project_ref
    if request.notes:
        form["notes"] = request.notes

    try:
        resp = httpx.post(
            config.recognition_url,
            headers=_auth_headers(config),
            data=form,
            files={"file": (request.filename, request.body, request.mime_type)},
            timeout=float(config.recognition_timeout_seconds or 60.0),
            follow_redirects=True,
        )
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise RecognitionFailed(_error_detail(e.response)) from e
    except httpx.HTTPError as e:
        raise RecognitionFailed(f"{type(e).__name__}: {e}") from e

    return _payload_from_response(resp)


def recognize_document_legacy(
    request: RecognitionRequest, *, config: Settings = settings
) -> dict[str, Any]:
    try:
        resp = httpx.post(
            config.recognition_legacy_url,
            headers=_auth_headers(config),
            json={"file_path": request.storage_key, "file_type": request.mime_type},
            timeout=float(config.recognition_timeout_seconds or 60.0),
            follow_redirects=True,
        )
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise RecognitionFailed(_error_detail(e.response) or "extract-receipt failed") from e
    except httpx.HTTPError as e:
        raise RecognitionFailed(f"{type(e).__name__}: {e}") from e

    return _payload_from_response(resp)


def _auth_headers(config: Settings) -> dict[str, str]:
    if not config.recognition_api_key:
        return {}
    return {"Authorization": f"Bearer {config.recognition_api_key}"}


def _error_detail(response: httpx.Response | None) -> str:
    if response is None:
        return "recognition service error"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        msg = body.get("message") or body.get("error")
        if msg:
            return str(msg)
    return response.reason_phrase or f"HTTP {response.status_code}"


def _payload_from_response(resp: httpx.Response) -> dict[str, Any]:
    obj = _parse_json_object(resp.text)
    if not isinstance(obj, dict):
        raise RecognitionFailed("recognition service returned non-JSON content")
    if obj.get("success") is False:
        raise RecognitionFailed(str(obj.get("error") or "recognition service reported failure"))
    return obj


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None
