from fastapi import FastAPI, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from dotenv import load_dotenv
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional
from app.errors import BalanceLookupError, InvalidInput, UpstreamUnavailable
from app.etherscan import EtherscanClient, ETHERSCAN_V2_URL
from app.locator import BlockTimestampLocator, LocatorSettings

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI()

# Initialize Etherscan client
ETHERSCAN_API_KEY = os.getenv("ETHERSCAN_API_KEY")
CHAIN_ID = int(os.getenv("CHAIN_ID", "1"))
ETHERSCAN_API_URL = os.getenv("ETHERSCAN_API_URL", ETHERSCAN_V2_URL)
ETHERSCAN_TIMEOUT = float(os.getenv("ETHERSCAN_TIMEOUT", "30"))
ETHERSCAN_MAX_ATTEMPTS = int(os.getenv("ETHERSCAN_MAX_ATTEMPTS", "1"))
client = EtherscanClient(
    ETHERSCAN_API_KEY,
    CHAIN_ID,
    base_url=ETHERSCAN_API_URL,
    timeout=ETHERSCAN_TIMEOUT,
    max_attempts=ETHERSCAN_MAX_ATTEMPTS
) if ETHERSCAN_API_KEY else None

# Binary search tuning (tolerance, probe budget, delay between probes)
LOCATOR_SETTINGS = LocatorSettings.from_env()

# Per-request deadline; no further probes are issued once it has passed
LOOKUP_TIMEOUT_SECONDS = float(os.getenv("LOOKUP_TIMEOUT_SECONDS", "60"))

API_KEY_MISSING = "Etherscan API key is not configured"


class BalanceRequest(BaseModel):
    walletAddress: Optional[str] = None
    date: Optional[str] = None


def date_to_timestamp_utc_midnight(date_str: str) -> int:
    """
    Convert a date string to the Unix timestamp of 00:00:00 UTC on that day.
    Accepts YYYY-MM-DD or a full ISO-8601 datetime (its UTC calendar day is used).
    Example: "2024-01-15" -> timestamp for 2024-01-15 00:00:00 UTC
    """
    date_str = (date_str or "").strip()
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d")
    except ValueError:
        try:
            dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidInput(f"Invalid date format. Use YYYY-MM-DD. Error: {e}")
    try:
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc)
        day = dt.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=timezone.utc)
        return int(day.timestamp())
    except (ValueError, OverflowError) as e:
        raise InvalidInput(f"Date out of range: {date_str}. Error: {e}")


def lookup_balance(address: Optional[str], date: Optional[str]) -> JSONResponse:
    """Validate input, run the block search and build the JSON response."""
    if not address or not date:
        raise InvalidInput("Wallet address and date are required")
    if not client:
        raise UpstreamUnavailable(API_KEY_MISSING)

    address = address.strip()
    timestamp = date_to_timestamp_utc_midnight(date)

    deadline = time.monotonic() + LOOKUP_TIMEOUT_SECONDS
    locator = BlockTimestampLocator(client, LOCATOR_SETTINGS)

    try:
        result = locator.locate(address, timestamp, should_stop=lambda: time.monotonic() > deadline)
    except BalanceLookupError as e:
        logger.warning("[BALANCE] lookup for %s on %s failed: %s", address, date, e.message)
        raise
    except Exception:
        logger.exception("[BALANCE] unexpected error for %s on %s", address, date)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    logger.info(
        "[BALANCE] %s on %s -> block %d, balance %s ETH (%ds from target)",
        result.address, date, result.height, result.to_dict()["balance"], result.distance_seconds
    )
    return JSONResponse({"success": True, **result.to_dict()})


@app.exception_handler(BalanceLookupError)
async def balance_lookup_error_handler(request: Request, exc: BalanceLookupError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg", "invalid value") if errors else "invalid value"
    logger.warning("[BALANCE] rejected malformed request body: %s", detail)
    return JSONResponse({"error": f"Invalid request body: {detail}"}, status_code=400)


@app.post("/api/balance")
def api_balance(body: BalanceRequest):
    """
    Get ETH balance for a wallet at 00:00 UTC on a given date.
    JSON body: {"walletAddress": "0x...", "date": "YYYY-MM-DD"}
    """
    return lookup_balance(body.walletAddress, body.date)


@app.get("/balance")
def balance(address: str = Query(""), date: str = Query("")):
    """Same lookup as POST /api/balance, with query parameters."""
    return lookup_balance(address, date)


@app.get("/api/test")
def api_test():
    """Check that the API key is configured and Etherscan answers."""
    if not client:
        return JSONResponse({"error": API_KEY_MISSING}, status_code=500)

    try:
        current_block = client.get_latest_block()
    except BalanceLookupError as e:
        logger.warning("[TEST] Etherscan API test failed: %s", e.message)
        return JSONResponse({
            "success": False,
            "message": "Etherscan API test failed",
            "error": e.message,
            "apiKeyConfigured": True
        })

    return JSONResponse({
        "success": True,
        "message": "Etherscan API connection successful",
        "currentBlock": current_block,
        "apiKeyConfigured": True
    })
