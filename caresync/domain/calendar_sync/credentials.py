"""
Calendar credential manager

Holds one long-lived refresh token per owner (a doctor or a clinic),
encrypted at rest with Fernet, and trades it for short-lived access
tokens on demand.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ...config import (
    CALENDAR_REQUEST_TIMEOUT,
    CALENDAR_TOKEN_ENCRYPTION_KEY,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    SECRET_KEY,
)
from ...errors import CredentialError, ExternalServiceError
from ...models import Doctor
from ...models_calendar import CalendarCredential

logger = logging.getLogger(__name__)

# Google OAuth URLs
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_PRIMARY_CALENDAR_URL = "https://www.googleapis.com/calendar/v3/users/me/calendarList/primary"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Refresh a cached access token this long before Google expires it
ACCESS_TOKEN_MARGIN = timedelta(minutes=5)


def doctor_owner(doctor_id: int) -> str:
    return f"doctor:{doctor_id}"


def clinic_owner(clinic_id: int) -> str:
    return f"clinic:{clinic_id}"


def get_fernet_key(secret: Optional[str] = None) -> bytes:
    """Explicit key when configured, otherwise a valid Fernet key derived from SECRET_KEY"""
    if secret is None and CALENDAR_TOKEN_ENCRYPTION_KEY:
        return CALENDAR_TOKEN_ENCRYPTION_KEY.encode()
    digest = hashlib.sha256((secret or SECRET_KEY).encode()).digest()
    return base64.urlsafe_b64encode(digest)


def fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class TokenCipher:
    def __init__(self, key: Optional[bytes] = None):
        self._fernet = Fernet(key or get_fernet_key())

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise CredentialError("Stored calendar credential cannot be decrypted; reconnect required") from e


@dataclass(frozen=True)
class CalendarAccessHandle:
    """A usable access token plus where to send it"""

    owner_id: str
    access_token: str
    calendar_id: str
    expires_at: datetime
    account_email: Optional[str] = None


class CredentialManager:
    def __init__(
        self,
        db: Session,
        cipher: Optional[TokenCipher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = CALENDAR_REQUEST_TIMEOUT,
    ):
        self.db = db
        self.cipher = cipher or TokenCipher()
        # Shared with the calendar client so tests can stand in for Google with one transport
        self.transport = transport
        self.timeout = timeout

    def http_client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout, **kwargs)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def get_credential(self, owner_id: str) -> Optional[CalendarCredential]:
        return self.db.query(CalendarCredential).filter(CalendarCredential.owner_id == owner_id).first()

    def store_credential(
        self,
        owner_id: str,
        refresh_token: str,
        account_email: Optional[str] = None,
        calendar_id: Optional[str] = None,
        access_token: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> CalendarCredential:
        """Encrypt and upsert. Storing the same refresh token again changes nothing."""
        if not refresh_token:
            raise CredentialError("No refresh token supplied; reconnect required")

        token_hash = fingerprint(refresh_token)
        credential = self.get_credential(owner_id)
        if credential and credential.token_fingerprint == token_hash:
            logger.info(f"ℹ️ Calendar credential for {owner_id} unchanged")
            return credential

        encrypted = self.cipher.encrypt(refresh_token)
        if credential:
            credential.encrypted_refresh_token = encrypted
            credential.token_fingerprint = token_hash
            credential.account_email = account_email or credential.account_email
            credential.calendar_id = calendar_id or credential.calendar_id or "primary"
        else:
            credential = CalendarCredential(
                owner_id=owner_id,
                encrypted_refresh_token=encrypted,
                token_fingerprint=token_hash,
                account_email=account_email,
                calendar_id=calendar_id or "primary",
            )
            self.db.add(credential)

        if access_token:
            credential.encrypted_access_token = self.cipher.encrypt(access_token)
            credential.access_token_expires_at = datetime.utcnow() + timedelta(seconds=expires_in or 3600)
        else:
            credential.encrypted_access_token = None
            credential.access_token_expires_at = None

        self.db.commit()
        self.db.refresh(credential)
        logger.info(f"✅ Calendar credential stored for {owner_id}")
        return credential

    def resolve_owner_for_doctor(self, doctor: Doctor) -> str:
        """The doctor's own calendar when connected, else the clinic's shared one"""
        own = doctor_owner(doctor.id)
        if self.get_credential(own):
            return own
        if doctor.clinic_id is not None:
            shared = clinic_owner(doctor.clinic_id)
            if self.get_credential(shared):
                return shared
        return own

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def get_access_handle(self, owner_id: str, force_refresh: bool = False) -> CalendarAccessHandle:
        credential = self.get_credential(owner_id)
        if not credential:
            raise CredentialError(f"No calendar connected for {owner_id}; reconnect required")

        now = datetime.utcnow()
        if (
            not force_refresh
            and credential.encrypted_access_token
            and credential.access_token_expires_at
            and credential.access_token_expires_at > now + ACCESS_TOKEN_MARGIN
        ):
            return self._handle(credential, self.cipher.decrypt(credential.encrypted_access_token))

        refresh_token = self.cipher.decrypt(credential.encrypted_refresh_token)
        logger.info(f"🔄 Refreshing calendar access token for {owner_id}")
        tokens = await self._post_token(
            {
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            owner_id,
        )

        access_token = tokens.get("access_token")
        if not access_token:
            raise CredentialError(f"Token endpoint returned no access token for {owner_id}; reconnect required")

        credential.encrypted_access_token = self.cipher.encrypt(access_token)
        credential.access_token_expires_at = now + timedelta(seconds=int(tokens.get("expires_in", 3600)))
        credential.last_refreshed_at = now
        rotated = tokens.get("refresh_token")
        if rotated and fingerprint(rotated) != credential.token_fingerprint:
            credential.encrypted_refresh_token = self.cipher.encrypt(rotated)
            credential.token_fingerprint = fingerprint(rotated)
            logger.info(f"🔄 Refresh token rotated for {owner_id}")
        self.db.commit()

        logger.info(f"✅ Calendar access token refreshed for {owner_id}")
        return self._handle(credential, access_token)

    @staticmethod
    def _handle(credential: CalendarCredential, access_token: str) -> CalendarAccessHandle:
        return CalendarAccessHandle(
            owner_id=credential.owner_id,
            access_token=access_token,
            calendar_id=credential.calendar_id or "primary",
            expires_at=credential.access_token_expires_at,
            account_email=credential.account_email,
        )

    async def _post_token(self, data: dict, owner_id: str) -> dict:
        try:
            async with self.http_client() as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            logger.error(f"❌ Token endpoint unreachable for {owner_id}: {e}")
            raise ExternalServiceError(f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            logger.error(f"❌ Token exchange rejected for {owner_id}: {response.text}")
            raise CredentialError(f"Calendar authorization rejected for {owner_id}; reconnect required")
        return response.json()

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    @staticmethod
    def build_authorization_url(state: str) -> str:
        if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
            raise CredentialError("Google Calendar not configured", code="calendar_not_configured")
        params = {
            "client_id": GOOGLE_CLIENT_ID,
            "redirect_uri": GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def connect(self, owner_id: str, code: str) -> CalendarCredential:
        """Finish the OAuth handshake: code -> tokens, account email, primary calendar"""
        if not code:
            raise CredentialError("No authorization code provided", code="missing_authorization_code")

        tokens = await self._post_token(
            {
                "code": code,
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "redirect_uri": GOOGLE_REDIRECT_URI,
                "grant_type": "authorization_code",
            },
            owner_id,
        )
        access_token = tokens.get("access_token")
        refresh_token = tokens.get("refresh_token")
        if not access_token or not refresh_token:
            raise CredentialError("Invalid token response; reconnect required")

        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with self.http_client() as client:
                user_info_response = await client.get(GOOGLE_USERINFO_URL, headers=headers)
                calendar_response = await client.get(GOOGLE_PRIMARY_CALENDAR_URL, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Failed to read Google account details: {e}") from e

        if user_info_response.status_code != 200:
            logger.error(f"❌ Failed to get user info: {user_info_response.text}")
            raise ExternalServiceError("Failed to get Google account info")
        account_email = user_info_response.json().get("email")

        calendar_id = "primary"
        if calendar_response.status_code == 200:
            calendar_id = calendar_response.json().get("id", "primary")

        credential = self.store_credential(
            owner_id,
            refresh_token,
            account_email=account_email,
            calendar_id=calendar_id,
            access_token=access_token,
            expires_in=tokens.get("expires_in", 3600),
        )
        logger.info(f"✅ Google Calendar connected for {owner_id} ({account_email})")
        return credential

    async def disconnect(self, owner_id: str) -> bool:
        """Revoke (best effort) and forget the credential. False when nothing was stored."""
        credential = self.get_credential(owner_id)
        if not credential:
            return False

        try:
            token = self.cipher.decrypt(credential.encrypted_refresh_token)
            async with self.http_client() as client:
                await client.post(GOOGLE_REVOKE_URL, params={"token": token})
        except (CredentialError, httpx.HTTPError) as e:
            logger.warning(f"⚠️ Failed to revoke Google token for {owner_id}: {e}")

        self.db.delete(credential)
        self.db.commit()
        logger.info(f"✅ Google Calendar disconnected for {owner_id}")
        return True
