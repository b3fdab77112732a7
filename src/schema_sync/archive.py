"""Archive codec for migration snapshots.

A snapshot archive is self-describing JSON:

    {
      "format": "schema-sync-archive",
      "format_version": 1,
      "source": "http://source:8081",
      "captured_at": "2024-05-01T12:00:00+00:00",
      "contexts": [
        {"name": ".", "is_default": true, "compatibility": "BACKWARD", "subjects": [
          {"name": "user-value", "compatibility": "BACKWARD", "versions": [
            {"version": 1, "id": 1, "schema_type": "AVRO",
             "schema": "...", "references": []}
          ]}
        ]}
      ]
    }

Decoding validates structure strictly and rejects archives written by a
newer codec. Versions must be listed in strictly increasing order.
"""

import glob
import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple, Type
from urllib.parse import quote

from schema_sync.exceptions import MalformedArchiveError, UnsupportedVersionError
from schema_sync.logging_config import create_logger
from schema_sync.models import (
    DEFAULT_CONTEXT,
    CompatibilityMode,
    Context,
    MigrationSnapshot,
    SchemaReference,
    SchemaType,
    SchemaVersion,
    Subject,
)

logger = create_logger(__name__)

ARCHIVE_FORMAT = "schema-sync-archive"
FORMAT_VERSION = 1

# quote() escapes "@", so it only ever appears as the separator
FILENAME_SEPARATOR = "@"


def _encode_version(version: SchemaVersion) -> Dict[str, Any]:
    return {
        "version": version.version,
        "id": version.schema_id,
        "schema_type": version.schema_type.value,
        "schema": version.schema,
        "references": [ref.to_dict() for ref in version.references],
    }


def _encode_subject(subject: Subject) -> Dict[str, Any]:
    return {
        "name": subject.name,
        "compatibility": subject.compatibility.value if subject.compatibility else None,
        "versions": [_encode_version(v) for v in subject.versions],
    }


def snapshot_to_dict(snapshot: MigrationSnapshot) -> Dict[str, Any]:
    """Plain-data form of a snapshot, tagged with the archive format."""
    return {
        "format": ARCHIVE_FORMAT,
        "format_version": FORMAT_VERSION,
        "source": snapshot.source,
        "captured_at": snapshot.captured_at.isoformat(),
        "contexts": [
            {
                "name": context.name,
                "is_default": context.is_default,
                "compatibility": context.compatibility.value if context.compatibility else None,
                "subjects": [_encode_subject(s) for s in context.subjects],
            }
            for context in snapshot.contexts
        ],
    }


def encode(snapshot: MigrationSnapshot) -> bytes:
    """Serialize a snapshot to archive bytes."""
    return json.dumps(snapshot_to_dict(snapshot), indent=2).encode("utf-8")


def _require(data: Dict[str, Any], key: str, expected: Type, where: str) -> Any:
    if key not in data:
        raise MalformedArchiveError(f"{where}: missing field '{key}'")
    value = data[key]
    # bool is an int subclass; never accept it for numeric fields
    if expected is int and isinstance(value, bool):
        raise MalformedArchiveError(f"{where}: field '{key}' must be int")
    if not isinstance(value, expected):
        raise MalformedArchiveError(
            f"{where}: field '{key}' must be {expected.__name__}, got {type(value).__name__}"
        )
    return value


def _require_object(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedArchiveError(f"{where}: expected an object")
    return value


def _optional_mode(data: Dict[str, Any], where: str) -> Optional[CompatibilityMode]:
    """Optional 'compatibility' field; absent and null both mean unset."""
    value = data.get("compatibility")
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedArchiveError(f"{where}: field 'compatibility' must be str")
    try:
        return CompatibilityMode(value)
    except ValueError:
        raise MalformedArchiveError(f"{where}: unknown compatibility '{value}'")


def _decode_reference(data: Any, where: str) -> SchemaReference:
    data = _require_object(data, where)
    return SchemaReference(
        name=_require(data, "name", str, where),
        subject=_require(data, "subject", str, where),
        version=_require(data, "version", int, where),
    )


def _decode_version(data: Any, subject: str, context: str, where: str) -> SchemaVersion:
    data = _require_object(data, where)
    try:
        schema_type = SchemaType(_require(data, "schema_type", str, where))
    except ValueError:
        raise MalformedArchiveError(f"{where}: unknown schema type '{data['schema_type']}'")

    references = _require(data, "references", list, where)
    return SchemaVersion(
        subject=subject,
        context=context,
        version=_require(data, "version", int, where),
        schema_id=_require(data, "id", int, where),
        schema=_require(data, "schema", str, where),
        schema_type=schema_type,
        references=tuple(
            _decode_reference(ref, f"{where}.references[{i}]")
            for i, ref in enumerate(references)
        ),
    )


def _decode_subject(data: Any, context: str, where: str) -> Subject:
    data = _require_object(data, where)
    name = _require(data, "name", str, where)
    compatibility = _optional_mode(data, where)

    versions = tuple(
        _decode_version(v, name, context, f"{where}.versions[{i}]")
        for i, v in enumerate(_require(data, "versions", list, where))
    )
    for previous, current in zip(versions, versions[1:]):
        if current.version <= previous.version:
            raise MalformedArchiveError(
                f"{where}: versions of '{name}' must be strictly increasing, "
                f"got v{current.version} after v{previous.version}"
            )

    return Subject(
        name=name,
        context=context,
        versions=versions,
        compatibility=compatibility,
    )


def _decode_context(data: Any, where: str) -> Context:
    data = _require_object(data, where)
    name = _require(data, "name", str, where)
    is_default = _require(data, "is_default", bool, where)
    if is_default != (name == DEFAULT_CONTEXT):
        raise MalformedArchiveError(
            f"{where}: context '{name}' has is_default={is_default}; "
            f"only '{DEFAULT_CONTEXT}' is the default context"
        )

    subjects = []
    seen: Set[str] = set()
    for j, raw in enumerate(_require(data, "subjects", list, where)):
        subject = _decode_subject(raw, name, f"{where}.subjects[{j}]")
        if subject.name in seen:
            raise MalformedArchiveError(
                f"{where}: subject '{subject.name}' appears more than once"
            )
        seen.add(subject.name)
        subjects.append(subject)

    return Context(
        name=name,
        subjects=tuple(subjects),
        is_default=is_default,
        compatibility=_optional_mode(data, where),
    )


def snapshot_from_dict(data: Any) -> MigrationSnapshot:
    """Rebuild a snapshot from its plain-data form."""
    data = _require_object(data, "archive")

    if data.get("format") != ARCHIVE_FORMAT:
        raise MalformedArchiveError(f"Not a schema sync archive (format={data.get('format')!r})")

    format_version = _require(data, "format_version", int, "archive")
    if format_version > FORMAT_VERSION:
        raise UnsupportedVersionError(format_version, FORMAT_VERSION)
    if format_version < 1:
        raise MalformedArchiveError(f"Invalid format version {format_version}")

    raw_captured_at = _require(data, "captured_at", str, "archive")
    try:
        captured_at = datetime.fromisoformat(raw_captured_at)
    except ValueError:
        raise MalformedArchiveError(f"Invalid captured_at timestamp '{raw_captured_at}'")

    contexts: List[Context] = []
    for i, raw in enumerate(_require(data, "contexts", list, "archive")):
        context = _decode_context(raw, f"contexts[{i}]")
        if any(existing.name == context.name for existing in contexts):
            raise MalformedArchiveError(
                f"contexts[{i}]: context '{context.name}' appears more than once"
            )
        contexts.append(context)

    return MigrationSnapshot(
        source=_require(data, "source", str, "archive"),
        captured_at=captured_at,
        contexts=tuple(contexts),
    )


def decode(payload: bytes) -> MigrationSnapshot:
    """Parse archive bytes into a snapshot.

    Raises:
        MalformedArchiveError: Invalid JSON, foreign format or bad fields
        UnsupportedVersionError: Archive written by a newer codec
    """
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedArchiveError(f"Archive is not valid JSON: {e}")
    return snapshot_from_dict(data)


def write_archive(snapshot: MigrationSnapshot, path: str) -> str:
    """Write a snapshot archive to ``path``."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as f:
        f.write(encode(snapshot))
    logger.info(
        f"Wrote archive with {snapshot.subject_count} subjects and "
        f"{snapshot.version_count} versions to {path}"
    )
    return path


def read_archive(path: str) -> MigrationSnapshot:
    """Read a snapshot archive from ``path``."""
    with open(path, "rb") as f:
        snapshot = decode(f.read())
    logger.info(f"Read archive {path} ({snapshot.subject_count} subjects)")
    return snapshot


def _filename_part(text: str) -> str:
    quoted = quote(text, safe="")
    # A leading dot would hide the file from *.json globbing
    if quoted.startswith("."):
        quoted = "%2E" + quoted[1:]
    return quoted


def archive_filename(context: str, subject: str) -> str:
    """File name used for one subject in directory mode.

    Both parts are percent-quoted, so distinct (context, subject) pairs
    always get distinct names.
    """
    if context == DEFAULT_CONTEXT:
        return f"{_filename_part(subject)}.json"
    return f"{_filename_part(context)}{FILENAME_SEPARATOR}{_filename_part(subject)}.json"


def write_archive_directory(snapshot: MigrationSnapshot, directory: str) -> List[str]:
    """Write one single-subject archive per subject into ``directory``."""
    os.makedirs(directory, exist_ok=True)
    paths = []
    for context in snapshot.contexts:
        for subject in context.subjects:
            single = MigrationSnapshot(
                source=snapshot.source,
                captured_at=snapshot.captured_at,
                contexts=(Context(
                    name=context.name,
                    subjects=(subject,),
                    is_default=context.is_default,
                    compatibility=context.compatibility,
                ),),
            )
            path = os.path.join(directory, archive_filename(context.name, subject.name))
            with open(path, "wb") as f:
                f.write(encode(single))
            paths.append(path)

    logger.info(f"Wrote {len(paths)} subject archives to {directory}")
    return paths


def merge_snapshots(snapshots: List[MigrationSnapshot]) -> MigrationSnapshot:
    """Merge snapshots into one, ordered deterministically.

    Raises:
        MalformedArchiveError: If a subject appears in more than one snapshot,
            or two snapshots disagree on a context's default compatibility
    """
    if not snapshots:
        raise MalformedArchiveError("No archives to merge")

    by_context: Dict[str, Dict[str, Subject]] = {}
    defaults: Dict[str, bool] = {}
    modes: Dict[str, Optional[CompatibilityMode]] = {}
    for snapshot in snapshots:
        for context in snapshot.contexts:
            defaults[context.name] = context.is_default
            known = modes.get(context.name)
            if known is not None and context.compatibility not in (None, known):
                raise MalformedArchiveError(
                    f"Archives disagree on the default compatibility of context "
                    f"'{context.name}' ({known.value} vs {context.compatibility.value})"
                )
            modes[context.name] = known or context.compatibility

            subjects = by_context.setdefault(context.name, {})
            for subject in context.subjects:
                if subject.name in subjects:
                    raise MalformedArchiveError(
                        f"Subject {context.name}:{subject.name} appears in more than one archive"
                    )
                subjects[subject.name] = subject

    ordered: List[Tuple[str, Dict[str, Subject]]] = sorted(
        by_context.items(), key=lambda item: (item[0] != DEFAULT_CONTEXT, item[0])
    )
    sources = sorted({snapshot.source for snapshot in snapshots})
    return MigrationSnapshot(
        source=",".join(sources),
        captured_at=min(snapshot.captured_at for snapshot in snapshots),
        contexts=tuple(
            Context(
                name=name,
                subjects=tuple(subjects[key] for key in sorted(subjects)),
                is_default=defaults[name],
                compatibility=modes[name],
            )
            for name, subjects in ordered
        ),
    )


def read_archive_directory(directory: str) -> MigrationSnapshot:
    """Read and merge every ``*.json`` archive in ``directory``."""
    paths = sorted(glob.glob(os.path.join(directory, "*.json")))
    if not paths:
        raise MalformedArchiveError(f"No JSON archives found in directory {directory}")

    snapshot = merge_snapshots([read_archive(path) for path in paths])
    logger.info(f"Merged {len(paths)} archives from {directory}")
    return snapshot
