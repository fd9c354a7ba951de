"""
Manifest repository: fetch, validate and compare tool manifests.

The manifest is a JSON document listing categories, tools and shared
modules. It can be served over HTTP(S) or read from a local or network
path (``file://`` URLs and plain paths both work). Payload references
inside the manifest are resolved relative to the manifest location.

The last valid manifest is persisted next to the cache so the catalog is
still known when the machine starts without network access.

Example:
    repo = ManifestRepository(
        "https://example.com/toolkit/manifest.json",
        state_file=Path("~/.local/share/fieldkit/manifest.json").expanduser(),
    )
    try:
        manifest = repo.fetch()
    except NetworkError:
        manifest = repo.load_last_known()
"""

import json
import logging
import tempfile
from collections import Counter
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urljoin, urlparse
from urllib.request import url2pathname

import httpx
from pydantic import ValidationError as PydanticValidationError

from fieldkit.core.catalog.exceptions import NetworkError, ValidationError
from fieldkit.core.catalog.http import fetch
from fieldkit.core.catalog.models import Manifest, ManifestDiff
from fieldkit.core.config.models import NetworkConfig

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_MAJOR = "1"

_URL_SCHEMES = ("http", "https", "file")


def _is_url(location: str) -> bool:
    scheme = urlparse(location).scheme.lower()
    # A single letter is a Windows drive, not a scheme.
    return scheme in _URL_SCHEMES


def validate_manifest(manifest: Mapping[str, Any] | Manifest) -> Manifest:
    """
    Validate a manifest document or model.

    Pure and side-effect free. Checks required fields and types (when
    given a raw mapping), the schema major version, id uniqueness and
    category references.

    Args:
        manifest: Decoded JSON object or an already-built Manifest

    Returns:
        The validated Manifest

    Raises:
        ValidationError: With every problem found
    """
    if isinstance(manifest, Manifest):
        model = manifest
    else:
        if not isinstance(manifest, Mapping):
            raise ValidationError("Manifest must be a JSON object")
        try:
            model = Manifest.model_validate(dict(manifest))
        except PydanticValidationError as e:
            problems = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError("Manifest failed schema validation", problems) from e

    problems: list[str] = []

    major = model.schema_version.split(".", 1)[0]
    if major != SUPPORTED_SCHEMA_MAJOR:
        problems.append(
            f"unsupported schemaVersion '{model.schema_version}' "
            f"(expected {SUPPORTED_SCHEMA_MAJOR}.x)"
        )

    for kind, ids in (
        ("category", [c.id for c in model.categories]),
        ("tool", [t.id for t in model.tools]),
        ("module", [m.id for m in model.modules]),
    ):
        for dup_id, count in Counter(ids).items():
            if count > 1:
                problems.append(f"duplicate {kind} id '{dup_id}' ({count} times)")

    category_ids = {c.id for c in model.categories}
    for tool in model.tools:
        if tool.category_id not in category_ids:
            problems.append(
                f"tool '{tool.id}' references unknown category '{tool.category_id}'"
            )

    if problems:
        raise ValidationError("Manifest is inconsistent", problems)

    return model


def diff_manifests(previous: Manifest | None, current: Manifest) -> ManifestDiff:
    """
    Compare two manifests by tool id and version.

    Args:
        previous: The manifest that was active before (None on first load)
        current: The newly adopted manifest

    Returns:
        ManifestDiff with sorted id lists
    """
    old = {t.id: t.version for t in previous.tools} if previous is not None else {}
    new = {t.id: t.version for t in current.tools}

    return ManifestDiff(
        added=sorted(new.keys() - old.keys()),
        removed=sorted(old.keys() - new.keys()),
        version_changed=sorted(
            tool_id for tool_id in new.keys() & old.keys() if new[tool_id] != old[tool_id]
        ),
    )


class ManifestRepository:
    """
    Fetches manifests and payloads from the configured source.

    Network and file access errors are raised as NetworkError so callers
    can fall back to cached state; malformed documents raise
    ValidationError.
    """

    def __init__(
        self,
        source: str | None,
        *,
        state_file: Path | None = None,
        network: NetworkConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the repository.

        Args:
            source: Manifest URL or path (None means only cached state is usable)
            state_file: Where the last valid manifest is persisted
            network: Timeout and retry settings
            client: Optional httpx client (tests inject a MockTransport here)
        """
        self.source = source
        self.state_file = Path(state_file) if state_file is not None else None
        self.network = network or NetworkConfig()
        self._client = client

    def fetch(self, source: str | None = None) -> Manifest:
        """
        Retrieve, parse and validate the manifest.

        Args:
            source: Override for the configured source

        Returns:
            The validated Manifest

        Raises:
            NetworkError: If the manifest cannot be retrieved
            ValidationError: If the manifest is malformed or inconsistent
        """
        location = source or self.source
        if not location:
            raise NetworkError("<unset>", "No manifest source configured")

        logger.info(f"Fetching manifest from {location}")
        raw = self._read(location)

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Manifest is not valid JSON", [str(e)], source=location) from e

        manifest = self.validate(data)
        logger.info(
            f"Manifest loaded: schema {manifest.schema_version} with "
            f"{len(manifest.tools)} tools, {len(manifest.modules)} modules"
        )
        return manifest

    @staticmethod
    def validate(manifest: Mapping[str, Any] | Manifest) -> Manifest:
        """See ``validate_manifest``."""
        return validate_manifest(manifest)

    @staticmethod
    def diff(previous: Manifest | None, current: Manifest) -> ManifestDiff:
        """See ``diff_manifests``."""
        return diff_manifests(previous, current)

    def resolve(self, ref: str) -> str:
        """
        Resolve a payload reference against the manifest location.

        Absolute URLs and absolute paths are returned unchanged.
        """
        if _is_url(ref):
            return ref
        if not self.source:
            return ref
        if _is_url(self.source):
            return urljoin(self.source, ref)
        return str(Path(self.source).parent / ref)

    def fetch_payload(self, payload_ref: str) -> bytes:
        """
        Download the bytes of a tool or module payload.

        Raises:
            NetworkError: If the payload cannot be retrieved
        """
        location = self.resolve(payload_ref)
        logger.debug(f"Downloading payload {payload_ref} from {location}")
        return self._read(location)

    def save_last_known(self, manifest: Manifest) -> Path | None:
        """
        Persist a validated manifest with an atomic write.

        Returns:
            Path written, or None when no state file is configured

        Raises:
            OSError: If the file cannot be written
        """
        if self.state_file is None:
            return None

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        json_str = manifest.model_dump_json(by_alias=True, indent=2)

        # Write to a temp file in the same directory, then rename
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self.state_file.parent,
            delete=False,
            suffix=".tmp",
        ) as tmp:
            tmp.write(json_str)
            tmp.flush()
            tmp_path = Path(tmp.name)

        tmp_path.replace(self.state_file)
        return self.state_file

    def load_last_known(self) -> Manifest | None:
        """
        Load the persisted manifest.

        Returns:
            The manifest, or None if none was saved or it no longer validates
        """
        if self.state_file is None or not self.state_file.exists():
            return None

        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
            return validate_manifest(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring last-known manifest at {self.state_file}: {e}")
            return None

    def _read(self, location: str) -> bytes:
        parsed = urlparse(location)
        scheme = parsed.scheme.lower()

        if scheme in ("http", "https"):
            try:
                return fetch(location, self.network, client=self._client)
            except httpx.HTTPStatusError as e:
                raise NetworkError(
                    location,
                    f"HTTP {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                raise NetworkError(location, f"Request failed: {e}") from e

        path = Path(url2pathname(parsed.path)) if scheme == "file" else Path(location)
        try:
            return path.read_bytes()
        except OSError as e:
            raise NetworkError(location, f"Cannot read {path}: {e.strerror or e}") from e
