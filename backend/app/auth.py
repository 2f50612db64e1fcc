"""Firebase authentication for the REST API and the session websocket.

Every conversation is owned by the Firebase UID that created it, so
the decoded claims are only used for their `uid`.
"""

import asyncio
import json
import logging
import os
from typing import Any, Optional

import firebase_admin
from fastapi import Header, HTTPException
from firebase_admin import auth, credentials


logger = logging.getLogger("confide")

_firebase_app: Optional[firebase_admin.App] = None


def _load_firebase_credentials() -> Optional[credentials.Base]:
    """Service account from env, either inline JSON or a file path.

    Without one, the SDK falls back to application default credentials.
    """
    raw_value = (
        os.getenv("CONFIDE_FIREBASE_SERVICE_ACCOUNT_JSON")
        or os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "")
    ).strip()
    if not raw_value:
        return None
    if raw_value.startswith("{"):
        return credentials.Certificate(json.loads(raw_value))
    return credentials.Certificate(raw_value)


def init_firebase() -> None:
    """Initialise the Firebase Admin SDK once per process."""
    global _firebase_app
    if _firebase_app:
        return
    cred = _load_firebase_credentials()
    _firebase_app = firebase_admin.initialize_app(cred) if cred else firebase_admin.initialize_app()
    logger.info("Firebase Admin initialised (service account=%s)", cred is not None)


def verify_firebase_token(token: str) -> dict[str, Any]:
    """Verify a Firebase ID token and return claims carrying a `uid`."""
    init_firebase()
    if not token:
        raise HTTPException(status_code=401, detail="Missing Firebase token")
    try:
        claims = auth.verify_id_token(token)
    except Exception as exc:
        logger.info("Rejected Firebase token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid Firebase token") from exc
    if not claims.get("uid"):
        raise HTTPException(status_code=401, detail="Firebase token has no user id")
    return claims


def bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    return token.strip()


async def get_current_user(authorization: str = Header(default="")) -> dict[str, Any]:
    """FastAPI dependency resolving the caller from the Authorization header."""
    return await asyncio.to_thread(verify_firebase_token, bearer_token(authorization))
