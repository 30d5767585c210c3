from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import structlog

from user_pipeline.core import (
    QuotaExceeded,
    ResourceConflict,
    Rollback,
    StateLayout,
    atomic_write_json,
    read_json,
    utc_now_iso,
)
from user_pipeline.deploy import EnvironmentRef, ExecutionRequest

from .images import LocalImageRepository

log = structlog.get_logger(__name__)

HealthCheck = Callable[[ExecutionRequest], Optional[str]]

# properties that carry a physical name unique across environments
NAME_PROPERTIES: tuple[str, ...] = ("Name", "ClusterName", "TableName")
OWNERS_FILE = "_owners.json"
DEFAULT_QUOTA = 200


def container_images(body: dict[str, Any]) -> list[str]:
    out: list[str] = []
    for res in body.get("Resources", {}).values():
        for c in res.get("Properties", {}).get("Containers", []) or []:
            image = c.get("Image")
            if isinstance(image, str):
                out.append(image)
            else:
                out.append(repr(image))
    return out


def image_health_check(repositories: Iterable[LocalImageRepository]) -> HealthCheck:
    """
    Healthy when every container image names a pushed tag of a known repository.
    """
    by_uri = {r.repository_uri: r for r in repositories}

    def _check(request: ExecutionRequest) -> str | None:
        for image in container_images(request.body):
            uri, sep, tag = image.rpartition(":")
            repo = by_uri.get(uri) if sep else None
            if repo is None or not repo.has(tag):
                return f"image {image} is not available; tasks cannot start"
        return None

    return _check


def physical_names(body: dict[str, Any]) -> dict[str, str]:
    """{"<Type>/<physical name>": logical id} for every named resource."""
    out: dict[str, str] = {}
    for logical, res in sorted(body.get("Resources", {}).items()):
        props = res.get("Properties", {})
        for key in NAME_PROPERTIES:
            value = props.get(key)
            if isinstance(value, str):
                out[f"{res['Type']}/{value}"] = logical
    return out


def _outputs(environment: str, body: dict[str, Any]) -> dict[str, Any]:
    resources = body.get("Resources", {})
    out: dict[str, Any] = {}
    for name, spec in sorted(body.get("Outputs", {}).items()):
        value = spec.get("Value")
        if isinstance(value, dict) and set(value) == {"Ref"} and value["Ref"] in resources:
            logical = value["Ref"]
            value = f"local:{resources[logical]['Type']}:{environment}/{logical}"
        out[name] = value
    return out


class LocalTemplateEngine:
    """
    File-backed template execution:

      {state_root}/environments/{name}.json    current state + history
      {state_root}/environments/_owners.json   physical name -> environment

    An apply that fails its health check is rolled back; the environment stays
    at the state it had before the apply.
    """

    def __init__(
        self,
        *,
        state_root: Path,
        health_check: HealthCheck | None = None,
        quota: int = DEFAULT_QUOTA,
    ) -> None:
        self.layout = StateLayout(Path(state_root))
        self.health_check = health_check
        self.quota = quota
        self._lock = threading.Lock()

    def _owners_path(self) -> Path:
        return self.layout.environments_root() / OWNERS_FILE

    def _load_owners(self) -> dict[str, str]:
        p = self._owners_path()
        return read_json(p) if p.exists() else {}

    def _load_state(self, name: str) -> dict[str, Any]:
        p = self.layout.environment_json(name)
        if not p.exists():
            return {"name": name, "current": None, "history": []}
        return read_json(p)

    def current(self, name: str) -> Optional[EnvironmentRef]:
        with self._lock:
            cur = self._load_state(name).get("current")
        if cur is None:
            return None
        return EnvironmentRef.from_dict(cur["ref"], changed=False)

    def body(self, name: str) -> Optional[dict[str, Any]]:
        with self._lock:
            cur = self._load_state(name).get("current")
        return None if cur is None else cur["body"]

    def history(self, name: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._load_state(name).get("history", []))

    def apply(self, request: ExecutionRequest) -> EnvironmentRef:
        env = request.environment
        with self._lock:
            state = self._load_state(env)
            owners = self._load_owners()

            count = len(request.body.get("Resources", {}))
            if count > self.quota:
                raise QuotaExceeded(
                    f"Environment {env} needs {count} resources; quota is {self.quota}"
                )

            names = physical_names(request.body)
            taken = sorted(n for n in names if owners.get(n, env) != env)
            if taken:
                raise ResourceConflict(
                    f"Resource(s) {taken} already belong to "
                    f"{sorted({owners[n] for n in taken})}"
                )

            prior = state.get("current")
            version = (prior["ref"]["version"] if prior else 0) + 1
            ref = EnvironmentRef(
                name=env,
                fingerprint=request.fingerprint,
                template_sha256=request.template_sha256,
                parameters=dict(request.parameters),
                version=version,
                changed=True,
                outputs=_outputs(env, request.body),
            )

            reason = self.health_check(request) if self.health_check else None
            entry = {
                "version": version,
                "fingerprint": request.fingerprint,
                "template_sha256": request.template_sha256,
                "parameters": dict(request.parameters),
                "applied_at_utc": utc_now_iso(),
            }

            if reason is not None:
                state["history"].append({**entry, "status": "rolled_back", "reason": reason})
                atomic_write_json(self.layout.environment_json(env), state)
                log.warning("engine.rollback", environment=env, version=version, reason=reason)
                raise Rollback(environment=env, reason=reason)

            prior_names = physical_names(prior["body"]) if prior else {}
            for n in prior_names:
                if n not in names and owners.get(n) == env:
                    del owners[n]
            for n in names:
                owners[n] = env

            state["current"] = {"ref": ref.to_dict(), "body": request.body}
            state["history"].append({**entry, "status": "applied"})
            atomic_write_json(self.layout.environment_json(env), state)
            atomic_write_json(self._owners_path(), owners)

        log.info("engine.applied", environment=env, version=version, resources=count)
        return ref
