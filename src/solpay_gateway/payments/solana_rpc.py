import itertools
import json
import logging
import socket
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from .exceptions import LedgerTimeoutError, LedgerTransportError
from .ledger import SignatureRef

logger = logging.getLogger(__name__)

_RETRYABLE_HTTP_STATUS = {429, 503}


class SolanaRpcClient:
    """
    JSON-RPC client for a Solana node implementing the ledger access protocol.

    Rate limiting (HTTP 429/503) and connection failures are retried with
    exponential backoff. A call never outlasts its timeout: backoff sleeps and
    later attempts share one deadline, and timeouts themselves are not retried.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10,
        max_retries: int = 3,
        backoff_factor: float = 0.2,
        commitment: str = "confirmed",
    ):
        self._endpoint = endpoint
        self._timeout = timeout
        self._request_ids = itertools.count(1)
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._commitment = commitment

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def commitment(self) -> str:
        return self._commitment

    def _next_id(self) -> int:
        return next(self._request_ids)

    @staticmethod
    def _time_left(method: str, deadline: float, budget: float) -> float:
        left = deadline - time.monotonic()
        if left <= 0:
            raise LedgerTimeoutError(f"Solana RPC {method} timed out after {budget}s")
        return left

    def call(
        self,
        method: str,
        params: Optional[list] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        payload = json.dumps(
            {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params or []}
        ).encode("utf-8")
        req = urllib.request.Request(
            self._endpoint,
            data=payload,
            headers={"Content-Type": "application/json"},
        )
        effective_timeout = self._timeout if timeout is None else timeout
        if effective_timeout <= 0:
            raise LedgerTimeoutError(f"Solana RPC {method} skipped: deadline already passed")
        deadline = time.monotonic() + effective_timeout

        attempt = 0
        while True:
            remaining = self._time_left(method, deadline, effective_timeout)
            try:
                with urllib.request.urlopen(req, timeout=remaining) as response:
                    data = response.read().decode("utf-8")
                    logger.debug(
                        "Solana RPC call method=%s params=%s status=%s len=%s",
                        method,
                        params,
                        response.status,
                        len(data),
                    )
                    body = json.loads(data)
                    break
            except urllib.error.HTTPError as exc:
                attempt += 1
                if exc.code in _RETRYABLE_HTTP_STATUS and attempt <= self._max_retries:
                    delay = self._backoff_factor * (2 ** (attempt - 1))
                    logger.warning(
                        "Solana RPC rate limited (status=%s). Retrying in %.2fs (attempt %d/%d)",
                        exc.code,
                        delay,
                        attempt,
                        self._max_retries,
                    )
                    time.sleep(min(delay, self._time_left(method, deadline, effective_timeout)))
                    continue
                logger.error(
                    "Solana RPC HTTP error method=%s status=%s: %s",
                    method,
                    exc.code,
                    exc,
                )
                raise LedgerTransportError(
                    f"Solana RPC {method} failed with HTTP {exc.code}"
                ) from exc
            except socket.timeout as exc:
                raise LedgerTimeoutError(
                    f"Solana RPC {method} timed out after {effective_timeout}s"
                ) from exc
            except urllib.error.URLError as exc:
                if isinstance(exc.reason, socket.timeout):
                    raise LedgerTimeoutError(
                        f"Solana RPC {method} timed out after {effective_timeout}s"
                    ) from exc
                attempt += 1
                if attempt <= self._max_retries:
                    delay = self._backoff_factor * (2 ** (attempt - 1))
                    logger.warning(
                        "Solana RPC connection error (%s). Retrying in %.2fs (attempt %d/%d)",
                        exc,
                        delay,
                        attempt,
                        self._max_retries,
                    )
                    time.sleep(min(delay, self._time_left(method, deadline, effective_timeout)))
                    continue
                logger.error("Failed to reach Solana RPC endpoint: %s", exc)
                raise LedgerTransportError(f"Failed to reach Solana RPC endpoint: {exc}") from exc
            except ValueError as exc:
                raise LedgerTransportError(f"Invalid JSON from Solana RPC {method}") from exc

        if body.get("error"):
            error = body["error"]
            logger.error("Solana RPC method=%s returned error: %s", method, error)
            raise LedgerTransportError(
                f"Solana RPC {method} error {error.get('code')}: {error.get('message')}"
            )
        return body.get("result")

    # Ledger access -----------------------------------------------------------

    def get_account_info(
        self, address: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        result = self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self._commitment}],
            timeout=timeout,
        )
        return (result or {}).get("value")

    def get_latest_blockhash(self, timeout: Optional[float] = None) -> str:
        result = self.call(
            "getLatestBlockhash",
            [{"commitment": self._commitment}],
            timeout=timeout,
        )
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as exc:
            raise LedgerTransportError("Malformed getLatestBlockhash response") from exc

    def get_signatures_for_address(
        self,
        address: str,
        limit: int = 20,
        timeout: Optional[float] = None,
    ) -> List[SignatureRef]:
        result = self.call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self._commitment}],
            timeout=timeout,
        )
        return [SignatureRef.from_rpc(entry) for entry in result or [] if entry.get("signature")]

    def get_transaction(
        self,
        signature: str,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        return self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self._commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
            timeout=timeout,
        )
