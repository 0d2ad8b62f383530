import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from requests import exceptions as req_exc

from app.errors import BlockNotFound, RateLimited, UpstreamUnavailable

logger = logging.getLogger(__name__)

ETHERSCAN_V2_URL = "https://api.etherscan.io/v2/api"

WEI_PER_ETH = Decimal(10) ** 18

# Backoff in seconds between transport-level retries (1s, 2s, 4s)
BACKOFF_TIMES = [1, 2, 4]

RATE_LIMIT_MESSAGE = "Etherscan API rate limit exceeded. Please try again later."


def wei_to_eth(wei: Any) -> Decimal:
    """Convert wei (int or decimal string) to ETH without float rounding."""
    try:
        return Decimal(int(wei)) / WEI_PER_ETH
    except (ValueError, TypeError):
        raise UpstreamUnavailable(f"Etherscan API returned a malformed balance: {str(wei)[:100]}")


def _hex_to_int(value: Any, what: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise UpstreamUnavailable(f"Etherscan API returned a malformed {what}: {str(value)[:100]}")
    try:
        return int(value, 16)
    except ValueError:
        raise UpstreamUnavailable(f"Etherscan API returned a malformed {what}: {value[:100]}")


def _mentions_rate_limit(*texts: Any) -> bool:
    for text in texts:
        if isinstance(text, str):
            lowered = text.lower()
            if "rate limit" in lowered or "busy" in lowered:
                return True
    return False


class EtherscanClient:
    """
    Etherscan-backed chain time oracle.

    Exposes the three calls the block locator needs (chain head, block timestamp,
    balance at block). Every call either returns parsed data or raises one of
    RateLimited, BlockNotFound or UpstreamUnavailable.
    """

    def __init__(
        self,
        api_key: str,
        chain_id: int = 1,
        base_url: str = ETHERSCAN_V2_URL,
        timeout: float = 30,
        max_attempts: int = 1
    ):
        self.api_key = api_key
        self.chain_id = chain_id
        self.base_url = base_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)

    def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make a GET request to Etherscan API.

        Timeouts, connection errors and invalid JSON are retried up to max_attempts
        with backoff. Rate limit signals (HTTP 429 or a NOTOK envelope) are raised
        immediately so a single lookup cannot turn into a retry storm.
        """
        full_params = {
            "chainid": self.chain_id,
            "apikey": self.api_key,
            **params
        }
        action = params.get("action", "?")

        last_exception: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                r = requests.get(self.base_url, params=full_params, timeout=self.timeout)
                r.raise_for_status()
                json_data = r.json()

            except req_exc.HTTPError as e:
                if e.response is not None and e.response.status_code == 429:
                    logger.warning("[Etherscan] HTTP 429 (Too Many Requests) on %s", action)
                    raise RateLimited(RATE_LIMIT_MESSAGE)
                # Other HTTP errors - don't retry
                raise UpstreamUnavailable(f"Etherscan API returned HTTP error on {action}: {e}")

            except (req_exc.Timeout, req_exc.ConnectionError, ValueError) as e:
                last_exception = e
                if attempt < self.max_attempts - 1:
                    backoff = BACKOFF_TIMES[min(attempt, len(BACKOFF_TIMES) - 1)]
                    logger.warning(
                        "[Etherscan] %s on %s, retrying in %ss (attempt %d/%d)",
                        type(e).__name__, action, backoff, attempt + 1, self.max_attempts
                    )
                    time.sleep(backoff)
                    continue
                raise UpstreamUnavailable(
                    f"Etherscan API request failed after {self.max_attempts} attempt(s). Last error: {str(e)[:200]}"
                )

            except req_exc.RequestException as e:
                raise UpstreamUnavailable(f"Etherscan API request failed: {str(e)[:200]}")

            return self._check_envelope(json_data, action)

        # Should not reach here, but just in case
        raise UpstreamUnavailable(
            f"Etherscan API request failed after {self.max_attempts} attempt(s). Last exception: {last_exception}"
        )

    def _check_envelope(self, json_data: Any, action: str) -> Dict[str, Any]:
        """Classify Etherscan's status/message envelope and JSON-RPC error objects."""
        if not isinstance(json_data, dict):
            raise UpstreamUnavailable(f"Etherscan API returned an unexpected response on {action}")

        status = json_data.get("status")
        message = str(json_data.get("message", ""))
        result = json_data.get("result")

        if status == "0":
            result_text = result if isinstance(result, str) else ""
            if "invalid api key" in result_text.lower():
                raise UpstreamUnavailable(f"Etherscan API error: {result_text}")
            if message == "NOTOK" or _mentions_rate_limit(message, result):
                logger.warning("[Etherscan] Rate limit signalled on %s: %s", action, result_text[:100])
                raise RateLimited(RATE_LIMIT_MESSAGE)
            raise UpstreamUnavailable(f"Etherscan API error: {message or result_text or 'unknown error'}")

        # Proxy module answers with a JSON-RPC envelope instead of status/message
        error = json_data.get("error")
        if error:
            error_message = error.get("message", "") if isinstance(error, dict) else str(error)
            if _mentions_rate_limit(error_message):
                raise RateLimited(RATE_LIMIT_MESSAGE)
            raise UpstreamUnavailable(f"Etherscan API error: {error_message}")

        return json_data

    def get_latest_block(self) -> int:
        """Get the latest block number."""
        data = self._get({
            "module": "proxy",
            "action": "eth_blockNumber"
        })
        return _hex_to_int(data.get("result"), "block number")

    def get_block_timestamp(self, block_no: int) -> int:
        """
        Get the Unix timestamp of a block.
        module=proxy, action=eth_getBlockByNumber (header only)
        """
        data = self._get({
            "module": "proxy",
            "action": "eth_getBlockByNumber",
            "tag": hex(block_no),
            "boolean": "false"
        })
        block = data.get("result")
        if block is None:
            raise BlockNotFound(f"Block {block_no} not found")
        if not isinstance(block, dict) or "timestamp" not in block:
            raise UpstreamUnavailable(f"Block {block_no} has no timestamp")
        return _hex_to_int(block["timestamp"], "block timestamp")

    def get_balance_at_block(self, address: str, block_no: int) -> Decimal:
        """
        Get ETH balance for an address at a specific block.
        module=account, action=balance
        Returns balance in ETH.
        """
        data = self._get({
            "module": "account",
            "action": "balance",
            "address": address,
            "tag": hex(block_no)
        })
        return wei_to_eth(data.get("result"))
