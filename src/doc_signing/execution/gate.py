import logging
from datetime import datetime, timedelta
from typing import Callable

from .errors import AuthError, InvalidToken, NotFound, OrderViolation, TokenExpired
from .interfaces import Authorization, RecordStoreGateway, SecurityGateway
from .models import Signer, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(days=30)


class OrderGate:
    """Resolves signers by opaque access token and enforces signing order.

    This is the only place a raw access token is turned into an identity.
    Nothing is written on any failure path.
    """

    def __init__(
        self,
        records: RecordStoreGateway,
        security: SecurityGateway,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._records = records
        self._security = security
        self._clock = clock

    def authorize(self, access_token: str | None) -> Authorization:
        if not access_token:
            raise AuthError("Access token required", code="TOKEN_REQUIRED", stage="authorize")
        signer = self._records.find_signer_by_token_hash(self._security.hash_token(access_token))
        if signer is None:
            raise InvalidToken("Invalid or expired access token", stage="authorize")
        if signer.token_expires_at and parse_iso(signer.token_expires_at) < self._clock():
            raise TokenExpired("Access token has expired", stage="authorize")

        blocking = self.blocking_signers(signer)
        if blocking:
            logger.info(
                "Signer %s (order %d) blocked by unsigned order(s) %s",
                signer.id, signer.signing_order, [s.signing_order for s in blocking],
            )
            raise OrderViolation("Previous signer must complete first", stage="authorize")

        instance = self._records.get_instance(signer.instance_id)
        if instance is None:
            raise NotFound("Document not found", code="DOC_NOT_FOUND", stage="authorize")
        return Authorization(signer=signer, instance=instance)

    def blocking_signers(self, signer: Signer) -> list[Signer]:
        return [
            s for s in self._records.list_signers(signer.instance_id)
            if s.signing_order < signer.signing_order and not s.is_signed
        ]

    def issue_token(self, signer: Signer, *, ttl: timedelta = DEFAULT_TOKEN_TTL) -> str:
        """Attach a fresh token to ``signer`` and return it. Only the hash is kept."""
        token = self._security.new_token()
        signer.access_token_hash = self._security.hash_token(token)
        signer.token_expires_at = to_iso(self._clock() + ttl)
        signer.updated_at = to_iso(self._clock())
        self._records.save_signer(signer)
        return token
