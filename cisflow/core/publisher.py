"""
Artifact extraction and publication.

After a build step succeeds, the produced identifier (AMI id, image digest)
is pulled out of the tool's output and written to the parameter store under
``/<namespace>/<component>/<level>/<field>`` for downstream consumers.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ExtractionError, PublishError
from .models import Artifact, ExtractionRule

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"[A-Za-z0-9_.-]+")


def registry_key(namespace: str, component: str, level: str, field: str) -> str:
    """Build a registry key following the ``/<ns>/<component>/<level>/<field>`` convention."""
    parts = [namespace, component, level, field]
    for p in parts:
        if not _SEGMENT.fullmatch(p or ""):
            raise PublishError(f"invalid registry key segment: {p!r}")
    return "/" + "/".join(parts)


def _check_key(key: str) -> None:
    if not key.startswith("/"):
        raise PublishError(f"registry key must be absolute: {key!r}")
    segments = key[1:].split("/")
    if any(not _SEGMENT.fullmatch(s) for s in segments):
        raise PublishError(f"invalid registry key: {key!r}")


class SsmParameterRegistry:
    """AWS Systems Manager Parameter Store registry (String parameters)."""

    def __init__(self, region: Optional[str] = None, client: Any = None):
        self.region = region
        self._client = client

    @property
    def client(self) -> Any:
        # Created on first use so dry runs never need AWS credentials
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self.region)
        return self._client

    def put(self, key: str, value: str, overwrite: bool = True) -> int:
        try:
            resp = self.client.put_parameter(Name=key, Value=value, Type="String", Overwrite=overwrite)
        except (ClientError, BotoCoreError) as e:
            raise PublishError(f"failed to write {key}: {e}") from e
        return int((resp or {}).get("Version", 0))


class ArtifactPublisher:
    """Extract identifiers from tool output and publish them once per run."""

    def __init__(self, registry: SsmParameterRegistry):
        self.registry = registry
        self._published: Dict[str, Artifact] = {}

    @property
    def published(self) -> List[Artifact]:
        return list(self._published.values())

    def publish(self, artifact_name: str, value: str, registry_key: str, overwrite: bool = True) -> Artifact:
        """Write ``value`` as a String entry at ``registry_key``.

        Raises:
            PublishError: invalid key or value, artifact already published in
                this run, or the registry write failed
        """
        if artifact_name in self._published:
            raise PublishError(f"artifact '{artifact_name}' was already published in this run")
        _check_key(registry_key)
        if not value:
            raise PublishError(f"artifact '{artifact_name}' has an empty value")
        artifact = Artifact(name=artifact_name, value=value, registry_key=registry_key, overwrite=overwrite)
        version = self.registry.put(registry_key, value, overwrite=overwrite)
        self._published[artifact_name] = artifact
        logger.info(f"Published {artifact_name}={value} to {registry_key} (version {version})")
        return artifact

    @staticmethod
    def extract(tool_output: str, rule: ExtractionRule) -> str:
        """Pull one identifier out of tool output according to ``rule``."""
        if rule.kind == "regex":
            m = re.search(rule.pattern or "", tool_output or "", re.MULTILINE)
            if not m:
                raise ExtractionError(f"pattern {rule.pattern!r} not found in output")
            try:
                value = m.group(rule.group)
            except IndexError as e:
                raise ExtractionError(f"pattern {rule.pattern!r} has no group {rule.group!r}") from e
        else:
            try:
                doc = json.loads(tool_output)
            except (TypeError, ValueError) as e:
                raise ExtractionError(f"output is not valid JSON: {e}") from e
            value = _walk(doc, rule.path or "")

        if value is None:
            raise ExtractionError("extracted value is empty")
        value = str(value)
        if rule.split is not None:
            parts = value.split(rule.split)
            idx = rule.index if rule.index is not None else -1
            try:
                value = parts[idx]
            except IndexError as e:
                raise ExtractionError(f"{value!r} has no part {idx} when split on {rule.split!r}") from e
        value = value.strip()
        if not value:
            raise ExtractionError("extracted value is empty")
        return value


def _walk(doc: Any, path: str) -> Any:
    cur = doc
    seen: List[str] = []
    for seg in path.split("."):
        where = ".".join(seen) or "<root>"
        if isinstance(cur, list):
            try:
                idx = int(seg)
            except ValueError as e:
                raise ExtractionError(f"'{where}' is a list; expected an index, got {seg!r}") from e
            if not cur:
                raise ExtractionError(f"'{where}' is empty")
            try:
                cur = cur[idx]
            except IndexError as e:
                raise ExtractionError(f"'{where}' has no element {idx}") from e
        elif isinstance(cur, dict):
            if seg not in cur:
                raise ExtractionError(f"field '{seg}' missing under '{where}'")
            cur = cur[seg]
        else:
            raise ExtractionError(f"cannot descend into '{where}' for {seg!r}")
        seen.append(seg)
    if isinstance(cur, (dict, list)):
        raise ExtractionError(f"'{path}' is not a scalar value")
    return cur
