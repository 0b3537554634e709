# src/handlers/main.py
import json
import logging
import os
from . import participants

logger = logging.getLogger()
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
logging.getLogger("botocore").setLevel(logging.WARNING)
logging.getLogger("boto3").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


def handler(event, context):
    request_context = event.get("requestContext") or {}
    http_info = request_context.get("http") or {}
    path = event.get("rawPath") or event.get("path") or http_info.get("path", "")
    method = event.get("httpMethod") or http_info.get("method", "UNKNOWN")
    request_id = request_context.get("requestId") or getattr(context, "aws_request_id", "unknown")

    logger.info(
        json.dumps(
            {
                "event": "RequestReceived",
                "path": path,
                "method": method,
                "requestId": request_id,
            }
        )
    )
    response = participants.handler(event, context)
    logger.info(
        json.dumps(
            {
                "event": "RequestCompleted",
                "method": method,
                "statusCode": response.get("statusCode"),
                "requestId": request_id,
            }
        )
    )
    return response
