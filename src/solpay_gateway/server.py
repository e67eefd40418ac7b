import json
import logging
import re
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import urlparse

from .config import GatewayConfig
from .health import get_api_test_status, get_health_status
from .payments import (
    ConflictError,
    ExpiredError,
    GatewayError,
    LedgerError,
    NotFoundError,
    PaymentService,
    ValidationError,
)

logger = logging.getLogger(__name__)

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept, Authorization",
}

Route = Tuple[str, Pattern[str], Callable[..., Tuple[HTTPStatus, Dict[str, Any]]]]


class PaymentGatewayServer:
    def __init__(
        self,
        config: GatewayConfig,
        service: Optional[PaymentService] = None,
        server_shutdown_timeout: float = 1.0,
    ):
        self._config = config
        self._service = service or PaymentService.from_config(config)
        self._server_shutdown_timeout = server_shutdown_timeout
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._prefix = urlparse(config.server.base_url).path.rstrip("/")

    def start(self) -> None:
        if self._httpd:
            raise RuntimeError("Server already running")

        handler_cls = self._create_handler_class()
        address = (self._config.server.listen_host, self._config.server.listen_port)
        self._httpd = ThreadingHTTPServer(address, handler_cls)
        logger.info("Payment gateway listening on %s:%s", *self.address)

        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if not self._httpd:
            return

        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread:
            self._thread.join(timeout=self._server_shutdown_timeout)
        self._httpd = None
        self._thread = None
        logger.info("Payment gateway stopped")

    @property
    def address(self) -> Tuple[str, int]:
        if not self._httpd:
            raise RuntimeError("Server is not running")
        host, port = self._httpd.server_address[:2]
        return host, port

    @property
    def service(self) -> PaymentService:
        return self._service

    # Route handlers --------------------------------------------------------

    def _health(self, body: Dict[str, Any]) -> Tuple[HTTPStatus, Dict[str, Any]]:
        return HTTPStatus.OK, get_health_status(self._config, self._service)

    def _api_test(self, body: Dict[str, Any]) -> Tuple[HTTPStatus, Dict[str, Any]]:
        return HTTPStatus.OK, get_api_test_status(self._service)

    def _create_payment(self, body: Dict[str, Any]) -> Tuple[HTTPStatus, Dict[str, Any]]:
        data = self._service.create_payment(
            recipient=body.get("recipient"),
            amount=body.get("amount"),
            asset=body.get("token") or body.get("asset"),
            label=body.get("label"),
            message=body.get("message"),
        )
        return HTTPStatus.OK, {"success": True, "data": data}

    def _transaction_metadata(
        self, body: Dict[str, Any], session_id: str
    ) -> Tuple[HTTPStatus, Dict[str, Any]]:
        return HTTPStatus.OK, self._service.transaction_metadata(session_id)

    def _create_transaction(
        self, body: Dict[str, Any], session_id: str
    ) -> Tuple[HTTPStatus, Dict[str, Any]]:
        return HTTPStatus.OK, self._service.create_transaction(session_id, body.get("account"))

    def _verify_payment(
        self, body: Dict[str, Any], session_id: str
    ) -> Tuple[HTTPStatus, Dict[str, Any]]:
        result = self._service.verify_payment(session_id, body.get("signature"))
        return HTTPStatus.OK, result.to_dict()

    def _payment_status(
        self, body: Dict[str, Any], session_id: str
    ) -> Tuple[HTTPStatus, Dict[str, Any]]:
        return HTTPStatus.OK, {"success": True, "data": self._service.payment_status(session_id)}

    def _routes(self) -> List[Route]:
        prefix = re.escape(self._prefix)
        session = r"(?P<session_id>[A-Za-z0-9_-]+)"
        return [
            ("GET", re.compile(r"^/?$"), self._health),
            ("GET", re.compile(rf"^{prefix}/test$"), self._api_test),
            ("POST", re.compile(rf"^{prefix}/payment/create$"), self._create_payment),
            ("GET", re.compile(rf"^{prefix}/payment/{session}/transaction$"), self._transaction_metadata),
            ("POST", re.compile(rf"^{prefix}/payment/{session}/transaction$"), self._create_transaction),
            ("POST", re.compile(rf"^{prefix}/payment/{session}/verify$"), self._verify_payment),
            ("GET", re.compile(rf"^{prefix}/payment/{session}/status$"), self._payment_status),
        ]

    # Internal helpers -----------------------------------------------------

    def _create_handler_class(self):
        routes = self._routes()

        class RequestHandler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"
            _max_log_payload = 2048

            def do_GET(self):  # noqa: N802
                self._handle("GET")

            def do_POST(self):  # noqa: N802
                self._handle("POST")

            def do_OPTIONS(self):  # noqa: N802
                self._send_json(HTTPStatus.OK, {})

            def log_message(self, format_: str, *args: Any) -> None:
                logger.debug("payment_gateway: " + format_, *args)

            def _handle(self, method: str) -> None:
                path = self._normalized_path(self.path)
                handler, params = self._match(method, path)
                if handler is None:
                    logger.info("404 - %s %s", method, self.path)
                    self._send_json(
                        HTTPStatus.NOT_FOUND,
                        {"success": False, "error": "Endpoint not found", "path": self.path},
                    )
                    return

                try:
                    payload = self._parse_body()
                except ValueError as exc:
                    self._send_json(
                        HTTPStatus.BAD_REQUEST,
                        {"success": False, "error": f"Invalid JSON payload: {exc}"},
                    )
                    return

                logger.info(
                    "Incoming request method=%s path=%s headers=%s body=%s",
                    method,
                    self.path,
                    self._sanitize_headers(self.headers),
                    self._truncate_for_log(payload),
                )

                try:
                    status, response = handler(payload, **params)
                except GatewayError as exc:
                    status = self._status_for(exc)
                    response = {"success": False, "error": str(exc)}
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Unhandled error processing request %s %s", method, self.path)
                    status = HTTPStatus.INTERNAL_SERVER_ERROR
                    response = {"success": False, "error": "Internal server error"}
                self._send_json(status, response)

            @staticmethod
            def _match(method: str, path: str):
                for route_method, pattern, handler in routes:
                    if route_method != method:
                        continue
                    found = pattern.match(path)
                    if found:
                        return handler, found.groupdict()
                return None, {}

            @staticmethod
            def _status_for(exc: GatewayError) -> HTTPStatus:
                if isinstance(exc, ValidationError):
                    return HTTPStatus.BAD_REQUEST
                if isinstance(exc, NotFoundError):
                    return HTTPStatus.NOT_FOUND
                if isinstance(exc, ExpiredError):
                    return HTTPStatus.GONE
                if isinstance(exc, ConflictError):
                    return HTTPStatus.CONFLICT
                if isinstance(exc, LedgerError):
                    return HTTPStatus.BAD_GATEWAY
                return HTTPStatus.INTERNAL_SERVER_ERROR

            def _parse_body(self) -> Dict[str, Any]:
                length = int(self.headers.get("Content-Length") or "0")
                if length == 0:
                    return {}
                raw_body = self.rfile.read(length).decode("utf-8")
                if not raw_body:
                    return {}
                parsed = json.loads(raw_body)
                if not isinstance(parsed, dict):
                    raise ValueError("expected a JSON object")
                return parsed

            def _send_json(self, status: HTTPStatus, payload: Dict[str, Any]) -> None:
                logger.info(
                    "Outgoing response status=%s path=%s body=%s",
                    status.value,
                    self.path,
                    self._truncate_for_log(payload),
                )
                body = json.dumps(payload).encode("utf-8")
                self.send_response(status.value)
                for header, value in _CORS_HEADERS.items():
                    self.send_header(header, value)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _truncate_for_log(self, data: Any) -> str:
                """
                Reduce size of logged payloads to keep logs readable.
                """
                try:
                    text = json.dumps(data)
                except (TypeError, ValueError):
                    text = str(data)
                if len(text) <= self._max_log_payload:
                    return text
                return text[: self._max_log_payload] + "...<truncated>"

            @staticmethod
            def _sanitize_headers(headers) -> Dict[str, str]:
                masked_headers: Dict[str, str] = {}
                for key, value in headers.items():
                    if key.lower() in {"authorization", "proxy-authorization"}:
                        masked_headers[key] = "***redacted***"
                    else:
                        masked_headers[key] = value
                return masked_headers

            @staticmethod
            def _normalized_path(path: str) -> str:
                return urlparse(path).path

        return RequestHandler
