import json
import logging
from typing import Any, Dict, Optional

from registration import (
    CONSULTATION_TIME_FIELD,
    ERROR_HEADERS,
    MSG_CANCELLATION_FAILED,
    MSG_PARTICIPANT_ID_MISSING,
    MSG_UPSTREAM_FAILED,
    RegistrationApi,
    cancellation_payload,
    error_response,
    load_config,
)

logger = logging.getLogger()

ALLOWED_METHODS = "GET, PATCH"
SANDBOX_MARKER = ":8000"

MSG_INVALID_LINK = "Неправильная ссылка"
MSG_NOT_CONFIGURED = "Сервис не настроен"

_api: Optional[RegistrationApi] = None


def handler(event, context):
    return handle_request(event, _default_api())


def _default_api() -> RegistrationApi:
    global _api
    if _api is not None:
        return _api
    api = RegistrationApi(load_config())
    # An incomplete config (e.g. a failed secret read) is rebuilt on the next call.
    if api.config.is_complete:
        _api = api
    return api


def handle_request(event, api: RegistrationApi):
    method = _method(event)
    headers = event.get("headers") or {}

    if method == "OPTIONS":
        return {
            "statusCode": 200,
            "headers": {
                "Access-Control-Allow-Headers": "*",
                "Access-Control-Allow-Methods": ALLOWED_METHODS,
            },
            "body": "",
        }

    if method not in ("GET", "PATCH"):
        return {
            "statusCode": 405,
            "headers": {"Allow": ALLOWED_METHODS, "Access-Control-Allow-Headers": "*"},
            "body": "",
        }

    params = event.get("queryStringParameters") or {}
    code = params.get("code") if isinstance(params, dict) else None
    if not code:
        return error_response(400, MSG_INVALID_LINK)

    if not api.config.is_complete:
        logger.error(
            json.dumps(
                {"event": "UpstreamNotConfigured", "message": MSG_NOT_CONFIGURED},
                ensure_ascii=False,
            )
        )
        return error_response(500, MSG_NOT_CONFIGURED)

    is_sandbox = is_sandbox_request(headers)
    if method == "GET":
        return _handle_get(api, code, is_sandbox)
    return _handle_patch(api, code, is_sandbox)


def is_sandbox_request(headers: Dict[str, Any]) -> bool:
    referer = _header(headers, "Referer")
    origin = _header(headers, "Origin")
    if SANDBOX_MARKER in referer or SANDBOX_MARKER in origin:
        return True
    return bool(_header(headers, "X-Sandbox"))


def _handle_get(api: RegistrationApi, code: str, is_sandbox: bool):
    participant, error = api.fetch_participant(code, is_sandbox)
    if error:
        return _normalize_error(error)

    if not participant.get("id") or not participant.get("code"):
        _log_failure("ParticipantIdMissing", MSG_PARTICIPANT_ID_MISSING)
        return error_response(404, MSG_PARTICIPANT_ID_MISSING)

    return _response(
        200,
        {"code": participant["code"], "slot": bool(participant.get(CONSULTATION_TIME_FIELD))},
    )


def _handle_patch(api: RegistrationApi, code: str, is_sandbox: bool):
    participant, error = api.fetch_participant(code, is_sandbox)
    if error:
        return _normalize_error(error)

    if not participant.get("id"):
        _log_failure("ParticipantIdMissing", MSG_PARTICIPANT_ID_MISSING)
        return error_response(404, MSG_PARTICIPANT_ID_MISSING)

    status, error = api.update_participant(participant["id"], cancellation_payload(), is_sandbox)
    if error or status != 200:
        _log_failure(
            "ConsultationCancelFailed",
            MSG_CANCELLATION_FAILED,
            participantId=participant["id"],
            upstreamStatus=(error or {}).get("statusCode", status),
        )
        return error_response(500, MSG_CANCELLATION_FAILED)

    logger.info(json.dumps({"event": "ConsultationCancelled", "participantId": participant["id"]}))
    return {"statusCode": 200, "headers": {"Cache-Control": "no-store"}, "body": ""}


def _normalize_error(error: dict):
    # Collaborator errors pass through; fill in whatever they left out.
    return {
        "statusCode": error.get("statusCode") or 500,
        "headers": {**ERROR_HEADERS, **(error.get("headers") or {})},
        "body": error.get("body") or json.dumps(
            {"errors": [{"message": MSG_UPSTREAM_FAILED}]}, ensure_ascii=False
        ),
    }


def _method(event) -> str:
    method = event.get("httpMethod")
    if not method:
        method = ((event.get("requestContext") or {}).get("http") or {}).get("method") or ""
    return method.upper()


def _header(headers: Dict[str, Any], name: str) -> str:
    # API Gateway forwards header names as sent (v1) or lowercased (v2).
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            return str(value or "")
    return ""


def _log_failure(event: str, message: str, **fields):
    logger.error(json.dumps({"event": event, "message": message, **fields}, ensure_ascii=False))


def _response(status: int, body: dict):
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json", "Cache-Control": "no-store"},
        "body": json.dumps(body, ensure_ascii=False),
    }
