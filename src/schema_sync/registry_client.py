"""Registry client adapter.

The engine reaches a schema registry only through ``RegistryClient``. The
REST implementation talks to a Confluent-compatible registry, scoping
every call to a context through the ``context`` query parameter, and maps
HTTP failures onto the engine's exception taxonomy:

- connection errors, timeouts, 5xx and 429 -> TransientNetworkError
- 409 on registration -> CompatibilityRejectedError
- any other 4xx -> RegistryRequestError

Example usage:
    client = RestRegistryClient("http://localhost:8081", timeout=10)
    for subject in client.list_subjects("."):
        print(subject, client.list_versions(subject, "."))
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union

import requests

from schema_sync.exceptions import (
    CompatibilityRejectedError,
    RegistryRequestError,
    TransientNetworkError,
)
from schema_sync.logging_config import create_logger
from schema_sync.models import (
    DEFAULT_CONTEXT,
    CompatibilityMode,
    RegistryMode,
    SchemaReference,
    SchemaType,
    SchemaVersion,
)

logger = create_logger(__name__)

CONTENT_TYPE = "application/vnd.schemaregistry.v1+json"


class RegistryClient(ABC):
    """Capabilities the engine needs from a schema registry."""

    @property
    def name(self) -> str:
        """Descriptor recorded as a snapshot's source."""
        return type(self).__name__

    @abstractmethod
    def list_contexts(self) -> List[str]:
        """List context names; the default context is always included."""

    @abstractmethod
    def list_subjects(self, context: str = DEFAULT_CONTEXT) -> List[str]:
        """List subject names in a context."""

    @abstractmethod
    def list_versions(self, subject: str, context: str = DEFAULT_CONTEXT) -> List[int]:
        """List version numbers of a subject; empty when it does not exist."""

    @abstractmethod
    def get_schema(
        self,
        subject: str,
        version: Union[int, str],
        context: str = DEFAULT_CONTEXT
    ) -> SchemaVersion:
        """Fetch one version ("latest" allowed)."""

    @abstractmethod
    def register_schema(
        self,
        subject: str,
        schema: str,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Sequence[SchemaReference] = (),
        context: str = DEFAULT_CONTEXT,
        schema_id: Optional[int] = None,
    ) -> int:
        """Register a schema and return the registry-assigned ID."""

    @abstractmethod
    def get_compatibility(
        self, subject: str, context: str = DEFAULT_CONTEXT
    ) -> Optional[CompatibilityMode]:
        """Subject-level compatibility, or None when not set."""

    @abstractmethod
    def get_default_compatibility(self, context: str = DEFAULT_CONTEXT) -> CompatibilityMode:
        """Registry-level compatibility for a context."""

    @abstractmethod
    def set_compatibility(
        self, subject: str, mode: CompatibilityMode, context: str = DEFAULT_CONTEXT
    ) -> None:
        """Set subject-level compatibility."""

    @abstractmethod
    def set_default_compatibility(
        self, mode: CompatibilityMode, context: str = DEFAULT_CONTEXT
    ) -> None:
        """Set registry-level compatibility for a context."""

    @abstractmethod
    def get_mode(self, context: str = DEFAULT_CONTEXT) -> RegistryMode:
        """Registry mode of a context."""

    @abstractmethod
    def set_mode(self, mode: RegistryMode, context: str = DEFAULT_CONTEXT) -> None:
        """Switch the registry mode of a context."""

    @abstractmethod
    def check_compatibility(
        self,
        subject: str,
        schema: str,
        context: str = DEFAULT_CONTEXT,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Sequence[SchemaReference] = (),
    ) -> bool:
        """Ask the registry whether ``schema`` would be accepted."""


def _parse_references(raw: Optional[List[Dict[str, Any]]]) -> tuple:
    return tuple(
        SchemaReference(name=ref["name"], subject=ref["subject"], version=int(ref["version"]))
        for ref in raw or []
    )


class RestRegistryClient(RegistryClient):
    """Schema registry client over the registry's REST API."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Registry URL, e.g. http://localhost:8081
            username: Basic auth user (requires password)
            password: Basic auth password
            api_key: Bearer token; takes precedence over basic auth
            timeout: Per-request timeout in seconds
            verify: Verify TLS certificates
            session: Pre-built session (tests)
        """
        if not base_url:
            raise ValueError("registry URL is required")
        if (username is None) != (password is None):
            raise ValueError("Both username and password must be provided, or neither")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        self.session.headers.update({"Content-Type": CONTENT_TYPE, "Accept": "application/json"})

        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"
        elif username and password:
            self.session.auth = (username, password)

        logger.debug(f"Initialized RestRegistryClient for {self.base_url}")

    @property
    def name(self) -> str:
        return self.base_url

    def _request(
        self,
        method: str,
        path: str,
        context: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        allow_404: bool = False,
    ) -> Any:
        """Perform one request and decode the JSON body.

        Returns None for a 404 when ``allow_404`` is set.
        """
        query = dict(params or {})
        if context and context != DEFAULT_CONTEXT:
            query["context"] = context

        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, json=payload, params=query or None, timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}")

        if response.status_code == 404 and allow_404:
            return None

        if response.status_code >= 400:
            self._raise_for_error(method, path, response)

        if not response.content:
            return None
        return response.json()

    def _raise_for_error(self, method: str, path: str, response: requests.Response) -> None:
        status = response.status_code
        error_code = None
        message = response.text
        try:
            body = response.json()
            error_code = body.get("error_code")
            message = body.get("message", message)
        except ValueError:
            pass

        detail = f"{method} {path}: HTTP {status}: {message}"
        if status >= 500 or status == 429:
            raise TransientNetworkError(detail, status_code=status)
        if status == 409:
            raise CompatibilityRejectedError(detail, status_code=status, error_code=error_code)
        raise RegistryRequestError(detail, status_code=status, error_code=error_code)

    @staticmethod
    def _subject_path(subject: str) -> str:
        return requests.utils.quote(subject, safe="")

    def list_contexts(self) -> List[str]:
        contexts = self._request("GET", "/contexts", allow_404=True)
        if contexts is None:
            # Registries without context support only have the default one
            return [DEFAULT_CONTEXT]
        if DEFAULT_CONTEXT not in contexts:
            contexts = [DEFAULT_CONTEXT] + list(contexts)
        return list(contexts)

    def list_subjects(self, context: str = DEFAULT_CONTEXT) -> List[str]:
        subjects = self._request("GET", "/subjects", context=context)
        logger.debug(f"Retrieved {len(subjects)} subjects from context '{context}'")
        return list(subjects)

    def list_versions(self, subject: str, context: str = DEFAULT_CONTEXT) -> List[int]:
        versions = self._request(
            "GET",
            f"/subjects/{self._subject_path(subject)}/versions",
            context=context,
            allow_404=True,
        )
        return sorted(int(v) for v in versions or [])

    def get_schema(
        self,
        subject: str,
        version: Union[int, str],
        context: str = DEFAULT_CONTEXT
    ) -> SchemaVersion:
        data = self._request(
            "GET",
            f"/subjects/{self._subject_path(subject)}/versions/{version}",
            context=context,
        )
        return SchemaVersion(
            subject=subject,
            context=context,
            version=int(data["version"]),
            schema_id=int(data["id"]),
            schema=data["schema"],
            schema_type=SchemaType.parse(data.get("schemaType")),
            references=_parse_references(data.get("references")),
        )

    def register_schema(
        self,
        subject: str,
        schema: str,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Sequence[SchemaReference] = (),
        context: str = DEFAULT_CONTEXT,
        schema_id: Optional[int] = None,
    ) -> int:
        payload: Dict[str, Any] = {"schema": schema}
        if schema_type != SchemaType.AVRO:
            payload["schemaType"] = schema_type.value
        if references:
            payload["references"] = [ref.to_dict() for ref in references]
        if schema_id is not None:
            # Only honoured by registries in IMPORT mode
            payload["id"] = schema_id

        result = self._request(
            "POST",
            f"/subjects/{self._subject_path(subject)}/versions",
            context=context,
            payload=payload,
        )
        assigned = int(result["id"])
        logger.info(f"Registered schema for {context}:{subject} with ID {assigned}")
        return assigned

    def get_compatibility(
        self, subject: str, context: str = DEFAULT_CONTEXT
    ) -> Optional[CompatibilityMode]:
        data = self._request(
            "GET", f"/config/{self._subject_path(subject)}", context=context, allow_404=True
        )
        if not data:
            return None
        level = data.get("compatibilityLevel") or data.get("compatibility")
        return CompatibilityMode(level) if level else None

    def get_default_compatibility(self, context: str = DEFAULT_CONTEXT) -> CompatibilityMode:
        data = self._request("GET", "/config", context=context, allow_404=True)
        level = (data or {}).get("compatibilityLevel") or (data or {}).get("compatibility")
        return CompatibilityMode(level) if level else CompatibilityMode.BACKWARD

    def set_compatibility(
        self, subject: str, mode: CompatibilityMode, context: str = DEFAULT_CONTEXT
    ) -> None:
        self._request(
            "PUT",
            f"/config/{self._subject_path(subject)}",
            context=context,
            payload={"compatibility": mode.value},
        )
        logger.info(f"Set {context}:{subject} compatibility to {mode.value}")

    def set_default_compatibility(
        self, mode: CompatibilityMode, context: str = DEFAULT_CONTEXT
    ) -> None:
        self._request("PUT", "/config", context=context, payload={"compatibility": mode.value})
        logger.info(f"Set context '{context}' default compatibility to {mode.value}")

    def get_mode(self, context: str = DEFAULT_CONTEXT) -> RegistryMode:
        data = self._request("GET", "/mode", context=context, allow_404=True)
        mode = (data or {}).get("mode")
        return RegistryMode(mode) if mode else RegistryMode.READWRITE

    def set_mode(self, mode: RegistryMode, context: str = DEFAULT_CONTEXT) -> None:
        self._request("PUT", "/mode", context=context, payload={"mode": mode.value})
        logger.info(f"Set context '{context}' mode to {mode.value}")

    def check_compatibility(
        self,
        subject: str,
        schema: str,
        context: str = DEFAULT_CONTEXT,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Sequence[SchemaReference] = (),
    ) -> bool:
        payload: Dict[str, Any] = {"schema": schema}
        if schema_type != SchemaType.AVRO:
            payload["schemaType"] = schema_type.value
        if references:
            payload["references"] = [ref.to_dict() for ref in references]

        data = self._request(
            "POST",
            f"/compatibility/subjects/{self._subject_path(subject)}/versions/latest",
            context=context,
            payload=payload,
            allow_404=True,
        )
        if data is None:
            # Nothing registered yet, so nothing to be incompatible with
            return True
        return bool(data.get("is_compatible", False))
