import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import boto3
import requests
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_SANDBOX_PORT = 8000
DEFAULT_TIMEOUT_SECONDS = 10.0

CONSULTATION_TIME_FIELD = "консультация_время"
CANCELLED_GROUP_ID = 7331

MSG_UPSTREAM_FAILED = "Ответ от сервера не был успешным"
MSG_PARTICIPANT_NOT_FOUND = "Пользователь не найден"
MSG_PARTICIPANT_ID_MISSING = "Не найден ID пользователя"
MSG_AMBIGUOUS_PARTICIPANT = "Произошла ошибка. Напишите в техподдержку"
MSG_CANCELLATION_FAILED = "Ошибка отмены консультации"

ERROR_HEADERS = {
    "Content-Type": "application/json",
    "Cache-Control": "no-store",
    "Access-Control-Allow-Headers": "*",
}

_SECRET_CACHE: Dict[str, str] = {}


def cancellation_payload() -> Dict[str, Any]:
    return {
        "name": "DELETE",
        "surname": "",
        "patronymic": "",
        "email": "",
        "phone": "",
        "company": "",
        "консультация_дата": "",
        CONSULTATION_TIME_FIELD: "",
        "консультация_номер_стола": "",
        "город_для_открытия_Яндекс_Лавка": "",
        "согласие_на_рассылку": "",
        "groupId": CANCELLED_GROUP_ID,
    }


def error_response(status: Optional[int], message: str) -> dict:
    return {
        "statusCode": status,
        "headers": dict(ERROR_HEADERS),
        "body": json.dumps({"errors": [{"message": message}]}, ensure_ascii=False),
    }


def _log_error(event: str, message: str, **fields):
    logger.error(json.dumps({"event": event, "message": message, **fields}, ensure_ascii=False))


@dataclass(frozen=True)
class RegistrationConfig:
    api_host: str
    event_id: str
    token: str
    sandbox_port: int = DEFAULT_SANDBOX_PORT
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def is_complete(self) -> bool:
        return bool(self.api_host and self.event_id and self.token)


def load_config(environ=None) -> RegistrationConfig:
    """Build the upstream configuration from the Lambda environment.

    ``TOKEN`` wins over ``TOKEN_SECRET_ARN``; the secret is only fetched when
    no plain token is set.
    """
    env = os.environ if environ is None else environ
    token = env.get("TOKEN", "")
    secret_arn = env.get("TOKEN_SECRET_ARN")
    if not token and secret_arn:
        token = resolve_token_secret(secret_arn)
    return RegistrationConfig(
        api_host=(env.get("API_HOST") or "").rstrip("/"),
        event_id=env.get("EVENT_ID", ""),
        token=token,
        sandbox_port=int(env.get("SANDBOX_PORT") or DEFAULT_SANDBOX_PORT),
        timeout_seconds=float(env.get("UPSTREAM_TIMEOUT_SECONDS") or DEFAULT_TIMEOUT_SECONDS),
    )


def resolve_token_secret(secret_arn: str) -> str:
    if secret_arn in _SECRET_CACHE:
        return _SECRET_CACHE[secret_arn]
    try:
        response = boto3.client("secretsmanager").get_secret_value(SecretId=secret_arn)
    except ClientError as exc:
        error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
        logger.error(
            json.dumps(
                {
                    "event": "TokenSecretUnavailable",
                    "code": error.get("Code"),
                    "message": error.get("Message"),
                }
            )
        )
        return ""
    secret = (response.get("SecretString") or "").strip()
    # Secrets may hold the bare token or a JSON document with a "token" key.
    if secret.startswith("{"):
        try:
            secret = str(json.loads(secret).get("token") or "")
        except json.JSONDecodeError:
            pass
    _SECRET_CACHE[secret_arn] = secret
    return secret


def clear_secret_cache():
    _SECRET_CACHE.clear()


def build_session(token: str) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }
    )
    return session


def with_port(url: str, port: int) -> str:
    parts = urlsplit(url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}"
    if parts.username:
        credentials = parts.username
        if parts.password:
            credentials = f"{credentials}:{parts.password}"
        netloc = f"{credentials}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class RegistrationApi:
    """Client for the participants endpoints of one upstream event."""

    def __init__(self, config: RegistrationConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or build_session(config.token)

    def _url(self, path: str, is_sandbox: bool) -> str:
        url = f"{self.config.api_host}/v1/events/{self.config.event_id}/{path}"
        if is_sandbox:
            url = with_port(url, self.config.sandbox_port)
        return url

    def participants_url(self, is_sandbox: bool = False) -> str:
        return self._url("participants", is_sandbox)

    def participant_url(self, participant_id, is_sandbox: bool = False) -> str:
        return self._url(f"participants/{participant_id}", is_sandbox)

    def fetch_participant(self, code: str, is_sandbox: bool = False) -> Tuple[Optional[dict], Optional[dict]]:
        url = self.participants_url(is_sandbox)
        try:
            response = self.session.get(
                url,
                params={"filter[code]": code},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            _log_error("ParticipantLookupFailed", MSG_UPSTREAM_FAILED, url=url, error=str(exc))
            return None, error_response(500, MSG_UPSTREAM_FAILED)

        if not response.status_code or response.status_code >= 400:
            _log_error(
                "ParticipantLookupFailed",
                MSG_UPSTREAM_FAILED,
                url=url,
                status=response.status_code,
            )
            return None, error_response(response.status_code, MSG_UPSTREAM_FAILED)

        try:
            data = response.json()
        except ValueError:
            _log_error("ParticipantLookupFailed", MSG_UPSTREAM_FAILED, url=url, error="invalid JSON")
            return None, error_response(500, MSG_UPSTREAM_FAILED)

        if not isinstance(data, list) or not data:
            _log_error("ParticipantNotFound", MSG_PARTICIPANT_NOT_FOUND)
            return None, error_response(404, MSG_PARTICIPANT_NOT_FOUND)

        if len(data) > 1:
            _log_error("ParticipantAmbiguous", MSG_AMBIGUOUS_PARTICIPANT, matches=len(data))
            return None, error_response(500, MSG_AMBIGUOUS_PARTICIPANT)

        participant = data[0]
        if not isinstance(participant, dict) or not participant.get("id"):
            _log_error("ParticipantIdMissing", MSG_PARTICIPANT_ID_MISSING)
            return None, error_response(404, MSG_PARTICIPANT_ID_MISSING)

        return participant, None

    def update_participant(
        self, participant_id, payload: Dict[str, Any], is_sandbox: bool = False
    ) -> Tuple[Optional[int], Optional[dict]]:
        url = self.participant_url(participant_id, is_sandbox)
        try:
            response = self.session.patch(url, json=payload, timeout=self.config.timeout_seconds)
        except requests.RequestException as exc:
            _log_error("ParticipantUpdateFailed", MSG_CANCELLATION_FAILED, url=url, error=str(exc))
            return None, error_response(500, MSG_CANCELLATION_FAILED)

        if response.status_code != 200:
            _log_error(
                "ParticipantUpdateFailed",
                MSG_CANCELLATION_FAILED,
                url=url,
                status=response.status_code,
            )
            return None, error_response(response.status_code, MSG_CANCELLATION_FAILED)

        return response.status_code, None
