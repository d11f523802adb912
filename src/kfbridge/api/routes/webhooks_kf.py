"""Customer-service callback webhook.

Any registered webhook path accepts:
- GET  URL verification: verify signature, decrypt echostr, return it.
- POST event callback: verify signature, ack "success" immediately, then
  decrypt and drain in the background worker.

Security:
- Message text and customer ids never appear in logs.
- Nothing is decrypted before the response on POST.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.background import BackgroundTask

from kfbridge.api.deps import get_service
from kfbridge.kf.callback import parse_callback_body
from kfbridge.kf.crypto import decrypt_envelope
from kfbridge.kf.errors import AuthError, DecryptError, ValidationError
from kfbridge.kf.signature import match_targets
from kfbridge.observability.correlation import get_correlation_id
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context
from kfbridge.services.bridge import BridgeService, WebhookTarget, normalize_webhook_path
from kfbridge.tasks.contracts import CallbackJob

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

ACK_BODY = "success"
ALLOWED_METHODS = "GET, POST"


class PayloadTooLargeError(ValidationError):
    """Request body exceeds the configured ceiling."""


def _text(status_code: int, content: str, **kwargs) -> PlainTextResponse:
    return PlainTextResponse(content, status_code=status_code, **kwargs)


async def _read_body(request: Request, limit: int) -> bytes:
    """Read the body, enforcing the ceiling on both declared and streamed size.

    Raises:
        PayloadTooLargeError: If the body exceeds limit bytes.
    """
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError("payload too large")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLargeError("payload too large")
    return bytes(body)


def _authenticate(
    targets: list[WebhookTarget],
    *,
    path: str,
    timestamp: str,
    nonce: str,
    encrypt: str,
    signature: str,
) -> WebhookTarget:
    """Bind the request to the first tenant whose token verifies it.

    Raises:
        AuthError: If no registered tenant verifies the signature.
    """
    matched = match_targets(
        targets, timestamp=timestamp, nonce=nonce, encrypt=encrypt, signature=signature
    )
    if not matched:
        logger.warning(
            "signature mismatch",
            extra={"extra_fields": safe_log_context(path=path, targets=len(targets))},
        )
        raise AuthError("unauthorized")
    return matched[0]


def _verify_url(
    targets: list[WebhookTarget],
    *,
    path: str,
    timestamp: str,
    nonce: str,
    signature: str,
    echostr: str,
) -> Response:
    if not timestamp or not nonce or not signature or not echostr:
        return _text(400, "missing query params")

    try:
        target = _authenticate(
            targets,
            path=path,
            timestamp=timestamp,
            nonce=nonce,
            encrypt=echostr,
            signature=signature,
        )
    except AuthError as e:
        return _text(401, str(e))

    account = target.account
    if not account.encoding_aes_key:
        return _text(401, "unauthorized")

    try:
        plaintext = decrypt_envelope(
            encoding_aes_key=account.encoding_aes_key,
            receive_id=account.corp_id,
            encrypt=echostr,
        )
    except DecryptError as e:
        logger.error(
            "echostr decrypt failed",
            extra={"extra_fields": safe_log_context(account_id=account.account_id, error=str(e))},
        )
        return _text(400, "decrypt failed")

    logger.info(
        "url verification succeeded",
        extra={"extra_fields": safe_log_context(account_id=account.account_id, path=path)},
    )
    return _text(200, plaintext)


# every method, so unregistered paths answer 404 and the rest get our own 405
HANDLED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{path:path}", methods=HANDLED_METHODS)
async def kf_webhook(
    path: str,
    request: Request,
    service: BridgeService = Depends(get_service),
) -> Response:
    """Receive a callback on any registered webhook path.

    Returns:
        404 if no account is registered at the path.
        GET: 200 decrypted echostr, 400 missing params or decrypt failure,
             401 signature mismatch.
        POST: 200 "success", 400 missing params or malformed body,
              401 signature mismatch, 413 body too large.
        405 for any other method.
    """
    webhook_path = normalize_webhook_path(path)
    targets = service.targets_for(webhook_path)
    if not targets:
        return _text(404, "not found")

    query = request.query_params
    timestamp = query.get("timestamp") or ""
    nonce = query.get("nonce") or ""
    signature = query.get("msg_signature") or query.get("signature") or ""

    if request.method == "GET":
        return _verify_url(
            targets,
            path=webhook_path,
            timestamp=timestamp,
            nonce=nonce,
            signature=signature,
            echostr=query.get("echostr") or "",
        )

    if request.method != "POST":
        return _text(405, "Method Not Allowed", headers={"Allow": ALLOWED_METHODS})

    if not timestamp or not nonce or not signature:
        return _text(400, "missing query params")

    try:
        raw = await _read_body(request, service.settings.max_body_bytes)
    except PayloadTooLargeError as e:
        logger.warning(
            "callback body rejected",
            extra={"extra_fields": safe_log_context(path=webhook_path, error=str(e))},
        )
        return _text(413, str(e))
    if not raw.strip():
        return _text(400, "empty payload")

    try:
        envelope = parse_callback_body(
            raw.decode("utf-8", errors="replace"),
            signature=signature,
            timestamp=timestamp,
            nonce=nonce,
        )
    except ValidationError as e:
        return _text(400, str(e))

    try:
        target = _authenticate(
            targets,
            path=webhook_path,
            timestamp=envelope.timestamp,
            nonce=envelope.nonce,
            encrypt=envelope.encrypt,
            signature=envelope.signature,
        )
    except AuthError as e:
        return _text(401, str(e))

    job = CallbackJob(
        path=webhook_path,
        account_id=target.account.account_id,
        encrypt=envelope.encrypt,
        correlation_id=get_correlation_id(),
    )
    logger.info(
        "callback accepted",
        extra={"extra_fields": safe_log_context(account_id=job.account_id, path=webhook_path)},
    )
    # Ack goes out first; the job is handed to the worker after the response is sent
    return _text(200, ACK_BODY, background=BackgroundTask(service.schedule_callback, job))
