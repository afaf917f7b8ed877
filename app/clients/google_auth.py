"""
Service-account credentials shared by the Sheets and Cloud Storage clients
"""
import base64
import json
import logging
import os
from typing import Optional, Sequence

from google.oauth2 import service_account

logger = logging.getLogger(__name__)

SHEETS_READONLY_SCOPE = "https://www.googleapis.com/auth/spreadsheets.readonly"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
STORAGE_SCOPE = "https://www.googleapis.com/auth/devstorage.read_write"


def load_credentials(
    scopes: Sequence[str],
    credentials_file: Optional[str] = None,
    credentials_json: Optional[str] = None,
) -> service_account.Credentials:
    """
    Load service-account credentials.

    GOOGLE_SERVICE_ACCOUNT_JSON (plain or Base64 JSON) wins over the file.

    Raises:
        FileNotFoundError: Neither source is available
        ValueError: The JSON payload cannot be decoded
    """
    raw = credentials_json or os.environ.get("GOOGLE_SERVICE_ACCOUNT_JSON")
    if raw:
        try:
            info = json.loads(raw)
        except json.JSONDecodeError:
            info = json.loads(base64.b64decode(raw).decode("utf-8"))
        logger.info("GOOGLE_AUTH|source=env")
        return service_account.Credentials.from_service_account_info(info, scopes=list(scopes))

    if credentials_file and os.path.exists(credentials_file):
        logger.info(f"GOOGLE_AUTH|source=file|path={credentials_file}")
        return service_account.Credentials.from_service_account_file(
            credentials_file, scopes=list(scopes)
        )

    raise FileNotFoundError(f"Google credentials not found: {credentials_file}")
