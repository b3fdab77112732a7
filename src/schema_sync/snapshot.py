"""Snapshot builder.

Reads a source registry into an immutable MigrationSnapshot and reads a
destination registry into a DestinationState. Every registry call goes
through the shared retry policy, so a transient blip is retried before a
version is given up on and recorded as a capture gap.
"""

import fnmatch
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from schema_sync.error_handler import AttemptResult, RetryPolicy
from schema_sync.exceptions import (
    MigrationCancelledError,
    PartialCaptureError,
    SourceUnreachableError,
    SubjectNotFoundError,
)
from schema_sync.logging_config import create_logger
from schema_sync.models import (
    DEFAULT_CONTEXT,
    CaptureGap,
    CaptureResult,
    CompatibilityMode,
    Context,
    DestinationState,
    MigrationSnapshot,
    SchemaVersion,
    Subject,
)
from schema_sync.registry_client import RegistryClient

logger = create_logger(__name__)


@dataclass
class SnapshotScope:
    """What to capture from the source.

    Attributes:
        subjects: Shell-style patterns; empty means every subject
        contexts: Context names; empty means every listed context
        all_versions: Capture full history instead of the latest version
        include_compatibility: Capture subject and context default compatibility
    """

    subjects: List[str] = field(default_factory=list)
    contexts: List[str] = field(default_factory=list)
    all_versions: bool = True
    include_compatibility: bool = True

    def matches(self, subject: str) -> bool:
        if not self.subjects:
            return True
        return any(fnmatch.fnmatchcase(subject, pattern) for pattern in self.subjects)

    def unmatched(self, names: Iterable[str]) -> List[str]:
        """Patterns that match none of ``names``."""
        names = list(names)
        return [
            pattern for pattern in self.subjects
            if not any(fnmatch.fnmatchcase(name, pattern) for name in names)
        ]


def order_contexts(names: Iterable[str]) -> List[str]:
    """Default context first, the rest sorted."""
    unique = set(names)
    ordered = [DEFAULT_CONTEXT] if DEFAULT_CONTEXT in unique else []
    ordered.extend(sorted(unique - {DEFAULT_CONTEXT}))
    return ordered


def _raise_if_cancelled(result: AttemptResult) -> None:
    if isinstance(result.error, MigrationCancelledError):
        raise result.error


def _list_source_contexts(
    client: RegistryClient,
    scope: SnapshotScope,
    retry: RetryPolicy,
    cancel_event: Optional[threading.Event],
) -> List[str]:
    if scope.contexts:
        return order_contexts(scope.contexts)

    result = retry.run(client.list_contexts, "list contexts", cancel_event)
    if not result.ok:
        _raise_if_cancelled(result)
        raise SourceUnreachableError(
            f"Cannot list contexts on {client.name}: {result.error}"
        ) from result.error
    return order_contexts(result.value)


def _capture_subject(
    client: RegistryClient,
    context: str,
    name: str,
    scope: SnapshotScope,
    retry: RetryPolicy,
    cancel_event: Optional[threading.Event],
    gaps: List[CaptureGap],
) -> Optional[Subject]:
    listing = retry.run(
        lambda: client.list_versions(name, context),
        f"list versions of {context}:{name}",
        cancel_event,
    )
    if not listing.ok:
        _raise_if_cancelled(listing)
        gaps.append(CaptureGap(name, context, None, str(listing.error)))
        return None

    version_numbers = sorted(listing.value)
    if not version_numbers:
        logger.warning(f"Subject {context}:{name} has no versions, skipping")
        return None
    if not scope.all_versions:
        version_numbers = version_numbers[-1:]

    versions: List[SchemaVersion] = []
    for number in version_numbers:
        fetched = retry.run(
            lambda number=number: client.get_schema(name, number, context),
            f"fetch {context}:{name} v{number}",
            cancel_event,
        )
        if fetched.ok:
            versions.append(fetched.value)
        else:
            _raise_if_cancelled(fetched)
            gaps.append(CaptureGap(name, context, number, str(fetched.error)))

    if not versions:
        return None

    compatibility = None
    if scope.include_compatibility:
        config = retry.run(
            lambda: client.get_compatibility(name, context),
            f"read compatibility of {context}:{name}",
            cancel_event,
        )
        if config.ok:
            compatibility = config.value
        else:
            logger.warning(
                f"Could not read compatibility of {context}:{name}: {config.error}"
            )

    return Subject(
        name=name,
        context=context,
        versions=tuple(versions),
        compatibility=compatibility,
    )


def _capture_context_default(
    client: RegistryClient,
    context: str,
    scope: SnapshotScope,
    retry: RetryPolicy,
    cancel_event: Optional[threading.Event],
) -> Optional[CompatibilityMode]:
    if not scope.include_compatibility:
        return None

    result = retry.run(
        lambda: client.get_default_compatibility(context),
        f"read default compatibility of '{context}'",
        cancel_event,
    )
    if result.ok:
        return result.value
    _raise_if_cancelled(result)
    logger.warning(f"Could not read default compatibility of '{context}': {result.error}")
    return None


def build_snapshot(
    client: RegistryClient,
    scope: Optional[SnapshotScope] = None,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
    strict: bool = False,
    clock: Optional[Callable[[], datetime]] = None,
) -> CaptureResult:
    """Capture the source registry.

    Args:
        client: Source registry
        scope: What to capture (default: everything, full history)
        retry: Retry policy for every read
        cancel_event: Run-scoped cancellation signal
        strict: Raise PartialCaptureError instead of returning gaps
        clock: Timestamp source (tests)

    Returns:
        CaptureResult holding the snapshot and any capture gaps

    Raises:
        SourceUnreachableError: If contexts or subjects cannot be listed
        SubjectNotFoundError: If a requested subject pattern matches nothing
        PartialCaptureError: If ``strict`` and gaps were recorded
        MigrationCancelledError: If the cancellation event is set during capture
    """
    scope = scope or SnapshotScope()
    retry = retry or RetryPolicy()
    captured_at = (clock or (lambda: datetime.now(timezone.utc)))()

    logger.info(f"Capturing snapshot from {client.name}")
    context_names = _list_source_contexts(client, scope, retry, cancel_event)

    gaps: List[CaptureGap] = []
    contexts: List[Context] = []
    seen_subjects = set()

    for context in context_names:
        listing = retry.run(
            lambda context=context: client.list_subjects(context),
            f"list subjects in '{context}'",
            cancel_event,
        )
        if not listing.ok:
            _raise_if_cancelled(listing)
            raise SourceUnreachableError(
                f"Cannot list subjects in context '{context}' on {client.name}: {listing.error}"
            ) from listing.error

        names = sorted(name for name in set(listing.value) if scope.matches(name))
        seen_subjects.update(names)

        subjects = []
        for name in names:
            subject = _capture_subject(client, context, name, scope, retry, cancel_event, gaps)
            if subject is not None:
                subjects.append(subject)

        if subjects:
            contexts.append(Context(
                name=context,
                subjects=tuple(subjects),
                is_default=context == DEFAULT_CONTEXT,
                compatibility=_capture_context_default(
                    client, context, scope, retry, cancel_event
                ),
            ))

    missing = scope.unmatched(seen_subjects)
    if missing:
        raise SubjectNotFoundError(missing)

    snapshot = MigrationSnapshot(
        source=client.name,
        captured_at=captured_at,
        contexts=tuple(contexts),
    )

    for gap in gaps:
        version = f" v{gap.version}" if gap.version is not None else ""
        logger.warning(f"Capture gap at {gap.context}:{gap.subject}{version}: {gap.cause}")

    logger.info(
        f"Captured {snapshot.subject_count} subjects, {snapshot.version_count} versions "
        f"in {len(snapshot.contexts)} contexts ({len(gaps)} gaps)"
    )

    if strict and gaps:
        raise PartialCaptureError(gaps)

    return CaptureResult(snapshot=snapshot, gaps=tuple(gaps))


def target_subjects(
    snapshot: MigrationSnapshot, target_context: Optional[str] = None
) -> List[Tuple[str, str]]:
    """(destination context, subject) pairs a snapshot would touch."""
    pairs = []
    for subject in snapshot.iter_subjects():
        pair = (target_context or subject.context, subject.name)
        if pair not in pairs:
            pairs.append(pair)
    return pairs


def capture_destination_state(
    client: RegistryClient,
    subjects: Sequence[Tuple[str, str]],
    contexts: Optional[Iterable[str]] = None,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DestinationState:
    """Read the destination for the given (context, subject) pairs.

    Reads full history for each subject, the destination's context list and
    the default compatibility of every involved context. A subject that
    does not exist is recorded as empty.

    Raises:
        The underlying adapter error when a read still fails after retries
    """
    retry = retry or RetryPolicy()
    wanted_contexts = order_contexts(
        list(contexts or []) + [context for context, _ in subjects]
    )

    existing = set(
        retry.run(client.list_contexts, "list destination contexts", cancel_event).unwrap()
    )
    existing.add(DEFAULT_CONTEXT)

    defaults: Dict[str, CompatibilityMode] = {}
    for context in wanted_contexts:
        if context not in existing:
            continue
        defaults[context] = retry.run(
            lambda context=context: client.get_default_compatibility(context),
            f"read default compatibility of '{context}'",
            cancel_event,
        ).unwrap()

    state: Dict[Tuple[str, str], Subject] = {}
    for context, name in subjects:
        numbers = retry.run(
            lambda: client.list_versions(name, context),
            f"list destination versions of {context}:{name}",
            cancel_event,
        ).unwrap()

        versions = tuple(
            retry.run(
                lambda number=number: client.get_schema(name, number, context),
                f"fetch destination {context}:{name} v{number}",
                cancel_event,
            ).unwrap()
            for number in sorted(numbers)
        )

        compatibility = None
        if numbers:
            compatibility = retry.run(
                lambda: client.get_compatibility(name, context),
                f"read destination compatibility of {context}:{name}",
                cancel_event,
            ).unwrap()

        state[(context, name)] = Subject(
            name=name,
            context=context,
            versions=versions,
            compatibility=compatibility,
        )

    logger.info(
        f"Read destination state for {len(state)} subjects "
        f"({sum(1 for s in state.values() if s.versions)} existing)"
    )
    return DestinationState(
        contexts=frozenset(existing),
        subjects=state,
        default_compatibility=defaults,
    )
