"""
Authentication gate for the HealthLedger backend.

Users authenticate by signing a message with their wallet. The recovered
signer must match the claimed wallet and, for doctors, the ledger must
grant the doctor role to that wallet. A successful login yields a signed,
time-boxed bearer credential bound to (wallet, role, numeric id). A
separate administrative path exchanges the configured API key/secret pair
for a token whose only subject is "admin".
"""

import base64
import hmac as stdlib_hmac
import json
import logging
import time
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature as BadMac
from cryptography.hazmat.primitives import hashes, hmac
from eth_account import Account
from eth_account.messages import encode_defunct
from pydantic import ValidationError

from healthledger.constants import (
    ADMIN_SUBJECT,
    ADMIN_TOKEN_EXPIRATION,
    API_KEY,
    API_SECRET,
    ROLES,
    SESSION_EXPIRATION,
    TOKEN_SECRET,
)
from healthledger.database import User, normalize_wallet
from healthledger.errors import (
    Forbidden,
    InvalidSignature,
    LedgerUnavailable,
    RoleNotGranted,
    Unauthorized,
)
from healthledger.models import Principal

logger = logging.getLogger(__name__)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def recover_signer(message: str, signature: str) -> str:
    """
    Recover the address that signed a message (EIP-191 personal_sign).

    Raises:
        InvalidSignature: the signature cannot be decoded or recovered
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.error(f"Error recovering signer: {str(e)}")
        raise InvalidSignature("Signature could not be verified") from None


def require_role(principal: Principal, *roles: str) -> Principal:
    """Raise Forbidden unless the principal holds one of the given roles."""
    if principal.role not in roles:
        raise Forbidden(f"This operation requires role {' or '.join(roles)}")
    return principal


class AuthGate:
    def __init__(self, ledger, cache, secret=TOKEN_SECRET, session_expiration=SESSION_EXPIRATION,
                 admin_expiration=ADMIN_TOKEN_EXPIRATION, api_key=API_KEY, api_secret=API_SECRET,
                 clock=time.time):
        self.ledger = ledger
        self.cache = cache
        self._secret = secret.encode() if isinstance(secret, str) else secret
        self.session_expiration = session_expiration
        self.admin_expiration = admin_expiration
        self._api_key = api_key
        self._api_secret = api_secret
        self._clock = clock

    # Credentials

    def _sign(self, data: bytes) -> bytes:
        h = hmac.HMAC(self._secret, hashes.SHA256())
        h.update(data)
        return h.finalize()

    def issue(self, subject, role, numeric_id=None, expires_in=None) -> str:
        """Sign a credential bound to (subject, role, numeric_id)."""
        expires_in = self.session_expiration if expires_in is None else expires_in
        claims = {"sub": subject, "role": role, "nid": numeric_id, "exp": int(self._clock()) + int(expires_in)}
        payload = _b64encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode())
        return f"{payload}.{_b64encode(self._sign(payload.encode()))}"

    def verify(self, token: str) -> Principal:
        """
        Check a bearer credential and return its principal.

        Malformed, forged and expired credentials all fail with the same
        Unauthorized error.
        """
        try:
            payload, signature = token.split(".")
            h = hmac.HMAC(self._secret, hashes.SHA256())
            h.update(payload.encode())
            h.verify(_b64decode(signature))
            claims = json.loads(_b64decode(payload))
            if int(claims["exp"]) <= int(self._clock()):
                raise Unauthorized()
            subject = claims["sub"]
            return Principal(
                wallet_address=None if subject == ADMIN_SUBJECT else subject,
                role=claims["role"],
                numeric_id=claims.get("nid"),
                expires_at=claims["exp"],
            )
        except (AttributeError, BadMac, KeyError, TypeError, ValueError, ValidationError):
            raise Unauthorized() from None

    # Logins

    def login(self, claimed_role, numeric_id, wallet_address, signature, message) -> Dict[str, Any]:
        """
        Authenticate a user by wallet signature.

        Args:
            claimed_role: patient, doctor or diagnostic
            numeric_id: the caller's role-scoped numeric identifier
            wallet_address: the wallet the caller claims to own
            signature: hex signature of ``message`` by that wallet
            message: the signed text

        Returns:
            dict: token, expires_in and the identity the token is bound to

        Raises:
            InvalidSignature: the signer is not the claimed wallet
            RoleNotGranted: the ledger refuses the doctor role
        """
        wallet = normalize_wallet(wallet_address)
        recovered = recover_signer(message, signature)
        if not wallet or recovered.lower() != wallet:
            logger.error(f"Signature verification failed for {wallet}")
            raise InvalidSignature("Signature does not match the claimed wallet")

        role = (claimed_role or "").lower()
        if role not in ROLES.values():
            raise RoleNotGranted(f"Invalid role: {claimed_role}")

        if role == ROLES["DOCTOR"]:
            self._check_doctor_role(wallet, int(numeric_id))

        token = self.issue(wallet, role, int(numeric_id))
        identity = self.cache.get(User, wallet_address=wallet)
        logger.info(f"Authentication successful for {wallet} with role {role}")
        return {
            "token": token,
            "token_type": "Bearer",
            "expires_in": self.session_expiration,
            "identity": identity.as_dict() if identity else
            {"wallet_address": wallet, "role": role, "numeric_id": int(numeric_id)},
        }

    def _check_doctor_role(self, wallet, numeric_id):
        try:
            granted = self.ledger.has_role(wallet, "DOCTOR")
        except LedgerUnavailable as e:
            cached = self.cache.get(User, wallet_address=wallet, role=ROLES["DOCTOR"], numeric_id=numeric_id)
            if cached is None:
                logger.warning(f"Ledger role check failed for {wallet} and no cached doctor registration: {e}")
                raise RoleNotGranted("Doctor role could not be confirmed") from e
            logger.warning(f"Ledger role check failed for {wallet}; trusting cached doctor registration: {e}")
            return
        if not granted:
            logger.warning(f"Ledger does not grant doctor role to {wallet}")
            raise RoleNotGranted("Wallet does not hold the doctor role")

    def issue_admin_token(self, api_key, api_secret) -> Dict[str, Any]:
        """Exchange the configured API key/secret pair for an admin token."""
        if not self._api_key or not self._api_secret:
            logger.error("Admin login attempted but API_KEY/API_SECRET are not configured")
            raise Unauthorized()
        key_ok = stdlib_hmac.compare_digest(str(api_key).encode(), self._api_key.encode())
        secret_ok = stdlib_hmac.compare_digest(str(api_secret).encode(), self._api_secret.encode())
        if not (key_ok and secret_ok):
            logger.warning("Admin login refused: invalid API credentials")
            raise Unauthorized()
        logger.info("Issued admin token")
        return {
            "token": self.issue(ADMIN_SUBJECT, ADMIN_SUBJECT, expires_in=self.admin_expiration),
            "token_type": "Bearer",
            "expires_in": self.admin_expiration,
        }
