"""
Token Issuer Service

Issues and validates the short-lived session tokens a client presents when
it streams observations for a login or registration attempt.
"""
import time
from typing import Optional

import jwt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..models.data_models import SessionPurpose, TokenValidation


class TokenIssuer:
    """
    Generates and validates RS256 session tokens.

    A token binds a session id to the purpose of the session and, for
    logins, to the identity key being claimed.
    """

    ISSUER = "voter-biometric-core"
    ALGORITHM = "RS256"

    def __init__(
        self,
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        expiry_minutes: int = 5,
    ):
        """
        Initialize TokenIssuer with RSA key pair.

        Args:
            private_key: PEM-encoded RSA private key (or None to generate)
            public_key: PEM-encoded RSA public key (or None to generate)
            expiry_minutes: Token lifetime
        """
        self.expiry_minutes = expiry_minutes
        if private_key and public_key:
            self.private_key = private_key
            self.public_key = public_key
        else:
            self._generate_key_pair()

    def _generate_key_pair(self) -> None:
        """Generate a new RSA key pair for signing tokens."""
        private_key_obj = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
            backend=default_backend()
        )

        self.private_key = private_key_obj.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode('utf-8')

        self.public_key = private_key_obj.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode('utf-8')

    def issue_session_token(
        self,
        session_id: str,
        purpose: SessionPurpose,
        identity_key: Optional[str] = None,
    ) -> str:
        """
        Generate a signed token for one verification session.

        Args:
            session_id: Unique session identifier
            purpose: Login or registration
            identity_key: Claimed (login) or requested (registration) identity

        Returns:
            Signed JWT token string
        """
        current_time = time.time()
        payload = {
            "session_id": session_id,
            "purpose": purpose.value,
            "iat": current_time,
            "exp": current_time + self.expiry_minutes * 60,
            "iss": self.ISSUER
        }
        # "sub" must be a string when present
        if identity_key is not None:
            payload["sub"] = identity_key
        return jwt.encode(payload, self.private_key, algorithm=self.ALGORITHM)

    def validate_token(self, token: str) -> TokenValidation:
        """
        Verify JWT signature, issuer and expiration.

        Args:
            token: JWT token string to validate

        Returns:
            TokenValidation result with validation status and claims
        """
        try:
            payload = jwt.decode(
                token,
                self.public_key,
                algorithms=[self.ALGORITHM],
                issuer=self.ISSUER
            )
        except jwt.ExpiredSignatureError:
            return TokenValidation(valid=False, error="Token has expired")
        except jwt.InvalidSignatureError:
            return TokenValidation(valid=False, error="Invalid token signature")
        except jwt.InvalidTokenError as e:
            return TokenValidation(valid=False, error=f"Invalid token: {str(e)}")

        try:
            purpose = SessionPurpose(payload.get("purpose"))
        except ValueError:
            return TokenValidation(valid=False, error="Invalid token: unknown purpose")

        return TokenValidation(
            valid=True,
            session_id=payload.get("session_id"),
            identity_key=payload.get("sub"),
            purpose=purpose,
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
        )
