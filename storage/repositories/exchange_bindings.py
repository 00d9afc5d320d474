"""
Exchange Binding Repository.

============================================================
PURPOSE
============================================================
Authoritative owner of exchange binding validation and of the
credential lifecycle.

============================================================
CREDENTIAL LIFECYCLE
============================================================
- create: credentials sealed by the Secret Engine
- update: generic path, credential columns are immutable
- rotate_credentials: the only way to change credentials; writes
  ciphertexts and hash together and resets failure tracking
- record_failure / reset_failures: atomic counter updates
- should_disable / disable_if_failing: failure-window auto-disable

============================================================
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update as sql_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import ensure_utc, utc_now
from core.config import DEFAULT_SUPPORTED_EXCHANGES
from core.exceptions import ValidationError
from security.secret_engine import KeyClass, SecretEngine
from storage.models.enums import BindingStatus, BindingVisibility
from storage.models.exchange import CREDENTIAL_FIELDS, ExchangeBinding
from storage.models.trading import Trading
from storage.models.user import User
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    AccessDeniedError,
    ExchangeBindingNameExistsError,
    ExchangeBindingNotFoundError,
    InUseError,
)
from storage.schemas import (
    CreateExchangeBindingRequest,
    ExchangeBindingResponse,
    Page,
    PaginationParams,
    SecuritySettings,
)


GENERATED_KEY_LENGTH = 64


@dataclass(frozen=True)
class RotatedCredentials:
    """Result of a rotation; the plaintexts are shown to the caller once."""

    binding: ExchangeBinding
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return f"RotatedCredentials(binding={self.binding!r}, api_key='***', api_secret='***')"


class ExchangeBindingRepository(BaseRepository[ExchangeBinding]):
    """
    Repository for exchange bindings.

    ============================================================
    SCOPE
    ============================================================
    Private bindings (owned, with credentials) and public bindings
    (shared, credential-free). Soft-deleted.

    ============================================================
    IMMUTABILITY
    ============================================================
    encrypted_api_key, encrypted_api_secret and api_key_hash
    change only via rotate_credentials(). Owner and visibility
    are fixed at creation.

    ============================================================
    """

    not_found_error = ExchangeBindingNotFoundError
    duplicate_error = ExchangeBindingNameExistsError
    immutable_fields = CREDENTIAL_FIELDS | {"user_id", "visibility"}

    def __init__(
        self,
        session: Session,
        secret_engine: SecretEngine,
        supported_exchanges: Iterable[str] = DEFAULT_SUPPORTED_EXCHANGES,
        max_failures: Optional[int] = None,
        failure_window: Optional[timedelta] = None,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            secret_engine: Seals and opens credentials
            supported_exchanges: Accepted exchange_type values
            max_failures: Process-wide auto-disable threshold, used
                when a binding does not set its own
            failure_window: Process-wide failure window, same rule
        """
        super().__init__(session, ExchangeBinding, "ExchangeBindingRepository", **kwargs)
        self._engine = secret_engine
        self._supported_exchanges = tuple(supported_exchanges)
        self._max_failures = max_failures
        self._failure_window = failure_window

    def _validate(self, entity: ExchangeBinding) -> None:
        entity.validate(self._supported_exchanges)
        SecuritySettings.parse(entity.security_settings)

    def _immutable_hint(self, field_name: str) -> str:
        if field_name in CREDENTIAL_FIELDS:
            return "use rotate_credentials()"
        return ""

    # =========================================================
    # CREATE
    # =========================================================

    def create(self, binding: ExchangeBinding) -> ExchangeBinding:
        """
        Create a binding from an already sealed entity.

        Raises:
            ValidationError: Binding invariant violated
            ReferenceNotFoundError: Owner does not exist
            ExchangeBindingNameExistsError: Name taken for this owner
        """
        binding.apply_defaults()
        self._validate(binding)
        if binding.user_id is not None:
            self._resolve(User, binding.user_id, "user", "create")
        self._ensure_name_free(binding.name, binding.user_id)
        self._add(
            binding,
            context={"reference_id": binding.user_id},
            duplicate_field="name",
            duplicate_value=binding.name,
            reference="user",
        )
        self._logger.info(
            f"Created {binding.visibility} binding {binding.id} ({binding.exchange_type})"
        )
        return binding

    def create_from_request(self, request: CreateExchangeBindingRequest) -> ExchangeBinding:
        """Seal the request's credentials and create the binding."""
        binding = ExchangeBinding(
            user_id=request.user_id,
            name=request.name,
            exchange_type=request.exchange_type,
            visibility=request.visibility.value,
            status=request.status.value,
            security_settings=request.security_settings.to_map(),
            info=dict(request.info),
        )
        if request.visibility == BindingVisibility.PRIVATE:
            sealed = self._engine.seal_credentials(request.api_key, request.api_secret)
            binding.encrypted_api_key = sealed.encrypted_api_key
            binding.encrypted_api_secret = sealed.encrypted_api_secret
            binding.api_key_hash = sealed.api_key_hash
        return self.create(binding)

    # =========================================================
    # READ
    # =========================================================

    def get_by_user(
        self,
        user_id: UUID,
        params: Optional[PaginationParams] = None,
    ) -> Page[ExchangeBinding]:
        """Private bindings of a user, newest first."""
        stmt = self._live(
            select(ExchangeBinding).where(
                ExchangeBinding.user_id == user_id,
                ExchangeBinding.visibility == BindingVisibility.PRIVATE.value,
            )
        ).order_by(ExchangeBinding.created_at.desc(), ExchangeBinding.id)
        return self._paginate(stmt, params, "get_by_user")

    def get_public(self, exchange_type: Optional[str] = None) -> List[ExchangeBinding]:
        """Public, active bindings ordered by name."""
        stmt = self._live(
            select(ExchangeBinding).where(
                ExchangeBinding.visibility == BindingVisibility.PUBLIC.value,
                ExchangeBinding.status == BindingStatus.ACTIVE.value,
            )
        )
        if exchange_type:
            stmt = stmt.where(ExchangeBinding.exchange_type == exchange_type)
        return self._execute_query(stmt.order_by(ExchangeBinding.name.asc()), "get_public")

    def get_available_for_user(self, user_id: UUID) -> List[ExchangeBinding]:
        """Bindings a user may attach a trading to: own private plus public."""
        stmt = self._live(
            select(ExchangeBinding).where(
                (ExchangeBinding.user_id == user_id)
                | (ExchangeBinding.visibility == BindingVisibility.PUBLIC.value)
            )
        ).order_by(ExchangeBinding.visibility.asc(), ExchangeBinding.name.asc())
        return self._execute_query(stmt, "get_available_for_user")

    def get_by_name_and_owner(self, name: str, owner_id: Optional[UUID]) -> Optional[ExchangeBinding]:
        """Resolve the uniqueness key; owner_id None means the public bucket."""
        stmt = self._live(select(ExchangeBinding).where(ExchangeBinding.name == name))
        if owner_id is None:
            stmt = stmt.where(ExchangeBinding.user_id.is_(None))
        else:
            stmt = stmt.where(ExchangeBinding.user_id == owner_id)
        return self._execute_scalar(stmt, "get_by_name_and_owner")

    def get_by_api_key_hash(
        self,
        api_key_hash: str,
        owner_id: Optional[UUID] = None,
    ) -> Optional[ExchangeBinding]:
        stmt = self._live(
            select(ExchangeBinding).where(ExchangeBinding.api_key_hash == api_key_hash)
        )
        if owner_id is not None:
            stmt = stmt.where(ExchangeBinding.user_id == owner_id)
        stmt = stmt.order_by(ExchangeBinding.created_at.desc()).limit(1)
        return self._execute_scalar(stmt, "get_by_api_key_hash")

    def get_by_api_key(self, api_key: str, owner_id: Optional[UUID] = None) -> Optional[ExchangeBinding]:
        return self.get_by_api_key_hash(self._engine.hash(api_key), owner_id)

    def get_or_raise(self, binding_id: UUID) -> ExchangeBinding:
        return self._get_by_id_or_raise(binding_id)

    def get_owned(self, binding_id: UUID, user_id: UUID) -> ExchangeBinding:
        """
        Load a binding on behalf of a user.

        Raises:
            ExchangeBindingNotFoundError: No live binding
            AccessDeniedError: Private binding of another user
        """
        binding = self._get_by_id_or_raise(binding_id)
        if binding.is_private and binding.user_id != user_id:
            raise AccessDeniedError(
                self._repository_name,
                "get",
                "exchange binding belongs to another user",
                {"binding_id": str(binding_id)},
            )
        return binding

    # =========================================================
    # UPDATE / DELETE
    # =========================================================

    def update(self, binding_id: UUID, patch: Dict[str, Any]) -> ExchangeBinding:
        """
        Generic partial update.

        Raises:
            ImmutableFieldError: Credential columns, owner or visibility
            ExchangeBindingNameExistsError: Rename onto a taken name
        """
        binding = self._get_by_id_or_raise(binding_id, "update")
        new_name = patch.get("name")
        if new_name and new_name != binding.name:
            self._ensure_name_free(new_name, binding.user_id, operation="update")
        self._apply_patch(binding, patch)
        self._flush("update", duplicate_field="name", duplicate_value=new_name)
        return binding

    def delete(self, binding_id: UUID) -> None:
        """
        Soft-delete a binding.

        Raises:
            InUseError: If any live trading references the binding
        """
        binding = self._get_by_id_or_raise(binding_id, "delete")
        in_use = self._count(
            select(Trading.id).where(
                Trading.exchange_binding_id == binding_id,
                Trading.deleted_at.is_(None),
            ),
            "delete_check",
        )
        if in_use:
            raise InUseError(self._repository_name, binding_id, f"{in_use} trading(s)")
        self._soft_delete(binding)

    # =========================================================
    # CREDENTIALS
    # =========================================================

    def rotate_credentials(
        self,
        binding_id: UUID,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ) -> RotatedCredentials:
        """
        Replace a private binding's credentials.

        Omitted values are generated. Ciphertexts and hash are written
        in one statement and failure tracking is reset; a binding in
        error state becomes active again.

        Returns:
            RotatedCredentials with the new plaintexts

        Raises:
            ValidationError: If the binding is public
        """
        binding = self._get_by_id_or_raise(binding_id, "rotate_credentials", for_update=True)
        if not binding.is_private:
            raise ValidationError("public bindings carry no credentials", field="visibility")

        api_key = api_key or self._engine.generate(KeyClass.EXCHANGE, GENERATED_KEY_LENGTH)
        api_secret = api_secret or self._engine.generate(KeyClass.EXCHANGE, GENERATED_KEY_LENGTH)
        sealed = self._engine.seal_credentials(api_key, api_secret)

        binding.encrypted_api_key = sealed.encrypted_api_key
        binding.encrypted_api_secret = sealed.encrypted_api_secret
        binding.api_key_hash = sealed.api_key_hash
        binding.failure_count = 0
        binding.last_failure_at = None
        if binding.status == BindingStatus.ERROR.value:
            binding.status = BindingStatus.ACTIVE.value
        binding.info = dict(binding.info or {}, credentials_rotated_at=self._clock.now().isoformat())
        self._validate(binding)
        self._flush("rotate_credentials")

        self._logger.info(f"Rotated credentials of binding {binding_id}")
        return RotatedCredentials(binding=binding, api_key=api_key, api_secret=api_secret)

    def reveal_credentials(self, binding: ExchangeBinding) -> Tuple[str, str]:
        """Decrypt (api_key, api_secret); ("", "") for public bindings."""
        return self._engine.open_credentials(
            binding.encrypted_api_key or "",
            binding.encrypted_api_secret or "",
        )

    def masked_api_key(self, binding: ExchangeBinding, n: int = 4) -> str:
        api_key = self._engine.decrypt(binding.encrypted_api_key or "")
        return self._engine.mask(api_key, n)

    def to_response(self, binding: ExchangeBinding) -> ExchangeBindingResponse:
        view = ExchangeBindingResponse.model_validate(binding)
        view.masked_api_key = self.masked_api_key(binding)
        return view

    def get_security_settings(self, binding: ExchangeBinding) -> SecuritySettings:
        return SecuritySettings.parse(binding.security_settings)

    # =========================================================
    # FAILURE TRACKING
    # =========================================================

    def record_failure(self, binding_id: UUID) -> ExchangeBinding:
        """Atomically increment failure_count and stamp last_failure_at."""
        now = self._clock.now()
        self._update_counters(
            "record_failure",
            binding_id,
            failure_count=ExchangeBinding.failure_count + 1,
            last_failure_at=now,
            updated_at=now,
        )
        binding = self._get_by_id(binding_id, refresh=True)
        self._logger.warning(
            f"Binding {binding_id} failure recorded (count={binding.failure_count})"
        )
        return binding

    def reset_failures(self, binding_id: UUID) -> ExchangeBinding:
        self._update_counters(
            "reset_failures",
            binding_id,
            failure_count=0,
            last_failure_at=None,
            updated_at=self._clock.now(),
        )
        return self._get_by_id(binding_id, refresh=True)

    def touch_last_used(self, binding_id: UUID) -> ExchangeBinding:
        now = self._clock.now()
        self._update_counters("touch_last_used", binding_id, last_used_at=now, updated_at=now)
        return self._get_by_id(binding_id, refresh=True)

    @staticmethod
    def should_disable(
        binding: ExchangeBinding,
        max_failures: int,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Pure auto-disable predicate.

        True iff failure_count >= max_failures and the last failure
        happened less than ``window`` ago.
        """
        if (binding.failure_count or 0) < max_failures:
            return False
        if binding.last_failure_at is None:
            return False
        now = ensure_utc(now) or utc_now()
        return now - ensure_utc(binding.last_failure_at) < window

    def disable_if_failing(
        self,
        binding_id: UUID,
        max_failures: Optional[int] = None,
        window: Optional[timedelta] = None,
    ) -> bool:
        """
        Put a binding into error state when it keeps failing.

        Thresholds default to the binding's own security settings, then
        to the process-wide values given at construction.
        Bindings with auto_disable_on_abuse off are never disabled.

        Returns:
            True if the binding was disabled by this call
        """
        binding = self._get_by_id_or_raise(binding_id, "disable_if_failing", for_update=True)
        settings = self.get_security_settings(binding)
        if not settings.auto_disable_on_abuse:
            return False
        raw = binding.security_settings or {}
        if max_failures is None:
            if "max_failures" in raw or self._max_failures is None:
                max_failures = settings.max_failures
            else:
                max_failures = self._max_failures
        if window is None:
            if "failure_window_seconds" in raw or self._failure_window is None:
                window = settings.failure_window
            else:
                window = self._failure_window

        if binding.status == BindingStatus.ERROR.value:
            return False
        if not self.should_disable(binding, max_failures, window, self._clock.now()):
            return False

        binding.status = BindingStatus.ERROR.value
        self._flush("disable_if_failing")
        self._logger.warning(
            f"Binding {binding_id} disabled after {binding.failure_count} failures"
        )
        return True

    # =========================================================
    # INTERNALS
    # =========================================================

    def _update_counters(self, operation: str, binding_id: UUID, **values: Any) -> None:
        self._check_cancelled(operation)
        stmt = (
            sql_update(ExchangeBinding)
            .where(ExchangeBinding.id == binding_id, ExchangeBinding.deleted_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, {"id": str(binding_id)})
        if result.rowcount == 0:
            raise ExchangeBindingNotFoundError(self._repository_name, binding_id, operation=operation)

    def _ensure_name_free(self, name: str, owner_id: Optional[UUID], operation: str = "create") -> None:
        if self.get_by_name_and_owner(name, owner_id) is not None:
            raise ExchangeBindingNameExistsError(self._repository_name, "name", name, operation)
