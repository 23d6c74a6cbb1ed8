"""Proof-of-Preview tokens.

A token is a signed, issuer-scoped, short-lived JWT asserting that a specific
diff for a specific repository file passed sandbox verification. Verification
fails closed: any problem is an InvalidPreviewToken, never a partial result.
"""

from __future__ import annotations

import time
from hashlib import sha256

import jwt

from .config import TokenConfig
from .errors import InvalidPreviewToken
from .types import PreviewClaims

_CLAIM_KEYS = ("jobId", "repo", "file", "diffHash")


def compute_diff_hash(diff: str) -> str:
    """SHA-256 hex digest of the whole diff text; any byte change alters it."""
    return sha256(diff.encode("utf-8")).hexdigest()


class PreviewTokenService:
    """Mints and verifies Proof-of-Preview tokens."""

    def __init__(self, config: TokenConfig | None = None):
        self.config = config or TokenConfig()

    @property
    def ttl_seconds(self) -> int:
        return self.config.ttl_seconds

    def hash(self, diff: str) -> str:
        return compute_diff_hash(diff)

    def sign(
        self,
        job_id: str,
        repository: str,
        target_file: str,
        diff_hash: str,
        issued_at: float | None = None,
    ) -> str:
        """
        Mint a token binding (job, repository, file, diff hash).

        Args:
            job_id: Sandbox job id
            repository: Repository locator exactly as submitted
            target_file: Target file path exactly as submitted
            diff_hash: compute_diff_hash() of the verified diff
            issued_at: Issue time (defaults to now); expiry is issued_at + ttl

        Returns:
            Encoded token
        """
        iat = int(issued_at if issued_at is not None else time.time())
        payload = {
            "jobId": job_id,
            "repo": repository,
            "file": target_file,
            "diffHash": diff_hash,
            "iss": self.config.issuer,
            "iat": iat,
            "exp": iat + self.config.ttl_seconds,
        }
        return jwt.encode(payload, self.config.secret, algorithm=self.config.algorithm)

    def verify(self, token: str) -> PreviewClaims:
        """
        Check signature, issuer and expiry.

        Raises:
            InvalidPreviewToken: On any failure
        """
        if not isinstance(token, str) or not token:
            raise InvalidPreviewToken("Invalid or expired preview token.")
        try:
            payload = jwt.decode(
                token,
                self.config.secret,
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                options={"require": ["exp", "iat", "iss"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidPreviewToken("Preview token expired.", details="expired") from e
        except jwt.PyJWTError as e:
            raise InvalidPreviewToken("Invalid or expired preview token.", details=type(e).__name__) from e

        if not all(isinstance(payload.get(k), str) and payload.get(k) for k in _CLAIM_KEYS):
            raise InvalidPreviewToken("Invalid or expired preview token.", details="missing_claims")

        return PreviewClaims(
            job_id=payload["jobId"],
            repository=payload["repo"],
            target_file=payload["file"],
            diff_hash=payload["diffHash"],
            issuer=payload["iss"],
            issued_at=float(payload["iat"]),
            expires_at=float(payload["exp"]),
        )
