"""
Staged edit sessions for per-user overrides and role policy.

A session keeps one pending value per key (last write wins) and moves through
CLEAN -> EDITING -> COMMITTING -> CLEAN. A commit applies entries one by one and
records an outcome for each; entries that failed stay pending so the caller can
retry just those. Keys are permission ids, except in the role matrix where they
are "role_id:permission_id".
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union
import logging

from pydantic import BaseModel, Field, computed_field

from app.core.exceptions import CommitPartialFailure, NotFoundError, SessionStateError, ValidationError
from app.database.rbac_store import RBACStore
from app.modules.rbac.schemas import Effect

logger = logging.getLogger(__name__)

StagedValue = Optional[Effect]
StagedInput = Union[Effect, str, None]
_CLEAR_VALUES = ("none", "")
MATRIX_KEY_SEPARATOR = ":"


class SessionState(str, Enum):
    CLEAN = "clean"
    EDITING = "editing"
    COMMITTING = "committing"


class EntryOutcome(BaseModel):
    permission_id: str
    role_id: Optional[str] = None  # set for role matrix entries
    effect: StagedValue  # None means the row was (to be) removed
    applied: bool
    error: Optional[str] = None

    @property
    def key(self) -> str:
        if self.role_id is None:
            return self.permission_id
        return matrix_key(self.role_id, self.permission_id)


class CommitResult(BaseModel):
    outcomes: List[EntryOutcome] = Field(default_factory=list)

    @property
    def applied_ids(self) -> List[str]:
        return [o.key for o in self.outcomes if o.applied]

    @property
    def failed_ids(self) -> List[str]:
        return [o.key for o in self.outcomes if not o.applied]

    @computed_field
    @property
    def status(self) -> str:
        """noop | applied | partial | failed"""
        if not self.outcomes:
            return "noop"
        if not self.failed_ids:
            return "applied"
        if not self.applied_ids:
            return "failed"
        return "partial"


def normalize_effect(value: StagedInput) -> StagedValue:
    if isinstance(value, Effect):
        return value
    if value is None or str(value).strip().lower() in _CLEAR_VALUES:
        return None
    try:
        return Effect(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid effect {value!r}; expected allow, deny or none")


def matrix_key(role_id: str, permission_id: str) -> str:
    return f"{role_id}{MATRIX_KEY_SEPARATOR}{permission_id}"


def split_matrix_key(key: str) -> Tuple[str, str]:
    role_id, separator, permission_id = key.partition(MATRIX_KEY_SEPARATOR)
    if not separator or not role_id or not permission_id:
        raise ValidationError(f"Malformed matrix key {key!r}; expected role_id:permission_id", invalid_ids=[key])
    return role_id, permission_id


def _matrix_keys(store: RBACStore) -> FrozenSet[str]:
    permission_ids = [p.id for p in store.list_permissions()]
    return frozenset(matrix_key(role.id, permission_id) for role in store.list_roles() for permission_id in permission_ids)


class StagedEffectSession(ABC):
    """Base for keyed allow/deny/none edit sessions."""

    subject = "entry"
    key_label = "permission id"

    def __init__(self, store: RBACStore, known_keys: FrozenSet[str], current: Dict[str, Effect]):
        self.store = store
        self._known_keys = frozenset(known_keys)
        self._current: Dict[str, Effect] = dict(current)
        self._pending: Dict[str, StagedValue] = {}
        self._state = SessionState.CLEAN

    @property
    def state(self) -> SessionState:
        return self._state

    def _ensure_not_committing(self) -> None:
        if self._state == SessionState.COMMITTING:
            raise SessionStateError("A commit is in progress")

    def stage(self, key: str, effect: StagedInput) -> None:
        """Record a pending change; None/"none" clears the stored row on commit."""
        self._ensure_not_committing()
        value = normalize_effect(effect)
        if key not in self._known_keys:
            raise ValidationError(f"Unknown {self.key_label}: {key}", invalid_ids=[key])
        self._pending[key] = value
        self._state = SessionState.EDITING

    def unstage(self, key: str) -> None:
        self._ensure_not_committing()
        self._pending.pop(key, None)
        if not self._pending:
            self._state = SessionState.CLEAN

    def pending_count(self) -> int:
        return len(self._pending)

    def pending(self) -> Dict[str, StagedValue]:
        return dict(self._pending)

    def current(self) -> Dict[str, Effect]:
        """Stored values as of open/last commit."""
        return dict(self._current)

    def effective_value(self, key: str) -> StagedValue:
        """Pending value if staged, otherwise the stored one."""
        if key in self._pending:
            return self._pending[key]
        return self._current.get(key)

    def discard(self) -> None:
        self._ensure_not_committing()
        self._pending.clear()
        self._state = SessionState.CLEAN

    def _load_known_keys(self) -> FrozenSet[str]:
        return frozenset(p.id for p in self.store.list_permissions())

    def _outcome(self, key: str, effect: StagedValue, applied: bool, error: Optional[str] = None) -> EntryOutcome:
        return EntryOutcome(permission_id=key, effect=effect, applied=applied, error=error)

    @abstractmethod
    def _write(self, key: str, effect: Effect) -> None:
        ...

    @abstractmethod
    def _remove(self, key: str) -> None:
        ...

    def commit(self) -> CommitResult:
        """
        Apply all pending entries.

        Raises:
            ValidationError: a pending key no longer exists; nothing written.
            CommitPartialFailure: some entries failed; they remain pending.
        """
        self._ensure_not_committing()
        if not self._pending:
            self._state = SessionState.CLEAN
            return CommitResult()

        self._known_keys = self._load_known_keys()
        unknown = [key for key in self._pending if key not in self._known_keys]
        if unknown:
            raise ValidationError(
                f"Staged changes reference unknown {self.key_label}s: {', '.join(sorted(unknown))}",
                invalid_ids=unknown,
            )

        self._state = SessionState.COMMITTING
        outcomes = []
        try:
            for key, effect in sorted(self._pending.items()):
                try:
                    if effect is None:
                        self._remove(key)
                        self._current.pop(key, None)
                    else:
                        self._write(key, effect)
                        self._current[key] = effect
                    outcomes.append(self._outcome(key, effect, applied=True))
                except Exception as e:
                    logger.warning(f"Failed to commit {self.subject} change for {key}: {e}")
                    outcomes.append(self._outcome(key, effect, applied=False, error=str(e)))
        finally:
            for outcome in outcomes:
                if outcome.applied:
                    self._pending.pop(outcome.key, None)
            self._state = SessionState.EDITING if self._pending else SessionState.CLEAN

        result = CommitResult(outcomes=outcomes)
        logger.info(f"Committed {self.subject} changes: {len(result.applied_ids)} applied, {len(result.failed_ids)} failed")
        if result.failed_ids:
            raise CommitPartialFailure(result)
        return result


class OverrideSession(StagedEffectSession):
    """Pending per-user permission overrides."""

    subject = "override"

    def __init__(self, store: RBACStore, user_id: str, permission_ids: FrozenSet[str], current: Dict[str, Effect]):
        super().__init__(store, permission_ids, current)
        self.user_id = user_id

    @classmethod
    def open(cls, store: RBACStore, user_id: str) -> "OverrideSession":
        permission_ids = frozenset(p.id for p in store.list_permissions())
        current = {o.permission_id: o.effect for o in store.get_user_overrides(user_id)}
        return cls(store, user_id, permission_ids, current)

    def _write(self, key: str, effect: Effect) -> None:
        self.store.upsert_override(self.user_id, key, effect)

    def _remove(self, key: str) -> None:
        self.store.delete_override(self.user_id, key)


class RolePolicySession(StagedEffectSession):
    """Pending allow/deny bindings for one role."""

    subject = "role policy"

    def __init__(self, store: RBACStore, role_id: str, permission_ids: FrozenSet[str], current: Dict[str, Effect]):
        super().__init__(store, permission_ids, current)
        self.role_id = role_id

    @classmethod
    def open(cls, store: RBACStore, role_id: str) -> "RolePolicySession":
        if store.get_role(role_id) is None:
            raise NotFoundError("Role not found")
        permission_ids = frozenset(p.id for p in store.list_permissions())
        current = {b.permission_id: b.effect for b in store.list_role_permissions(role_id)}
        return cls(store, role_id, permission_ids, current)

    def _write(self, key: str, effect: Effect) -> None:
        self.store.upsert_role_permission(self.role_id, key, effect)

    def _remove(self, key: str) -> None:
        self.store.delete_role_permission(self.role_id, key)


class RoleMatrixSession(StagedEffectSession):
    """Pending bindings across every role at once, keyed "role_id:permission_id"."""

    subject = "role matrix"
    key_label = "role:permission pair"

    @classmethod
    def open(cls, store: RBACStore) -> "RoleMatrixSession":
        known = _matrix_keys(store)
        current = {
            matrix_key(b.role_id, b.permission_id): b.effect
            for b in store.list_all_role_permissions()
            if matrix_key(b.role_id, b.permission_id) in known
        }
        return cls(store, known, current)

    def _load_known_keys(self) -> FrozenSet[str]:
        return _matrix_keys(self.store)

    def stage(self, key: str, effect: StagedInput) -> None:
        split_matrix_key(key)
        super().stage(key, effect)

    def _outcome(self, key: str, effect: StagedValue, applied: bool, error: Optional[str] = None) -> EntryOutcome:
        role_id, permission_id = split_matrix_key(key)
        return EntryOutcome(role_id=role_id, permission_id=permission_id, effect=effect, applied=applied, error=error)

    def _write(self, key: str, effect: Effect) -> None:
        role_id, permission_id = split_matrix_key(key)
        self.store.upsert_role_permission(role_id, permission_id, effect)

    def _remove(self, key: str) -> None:
        role_id, permission_id = split_matrix_key(key)
        self.store.delete_role_permission(role_id, permission_id)
