from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

import pytest

ENVIRONMENT: dict[str, Any] = {
    "spec_version": 1,
    "stack_name": "UserEcsStack",
    "network": {"vpc_name": "user-vpc", "max_azs": 3, "nat_gateways": 1},
    "cluster_name": "user-cluster",
    "container": {
        "name": "user-container",
        "port": 8080,
        "environment": {"SPRING_PROFILES_ACTIVE": "prod"},
        "secrets": [{"name": "DB_PASSWORD", "secret_id": "user/db-password"}],
    },
    "ingress": [
        {"cidr": "10.0.0.0/16", "port": 80, "description": "listener"},
        {"cidr": "10.0.0.0/16", "port": 8080, "description": "health check"},
    ],
    "image": {"repository": "user-repository"},
}

DATASTORE: dict[str, Any] = {
    "spec_version": 1,
    "stack_name": "UserDynamoDbStack",
    "table_name": "User",
    "partition_key": {"name": "userId"},
    "sort_key": {"name": "timestamp", "type": "N"},
    "global_secondary_indexes": [
        {"name": "followingId-index", "partition_key": {"name": "followingId"}}
    ],
}

REPOSITORY_URI = "registry.local/user-repository"


@pytest.fixture
def environment_spec() -> dict[str, Any]:
    return copy.deepcopy(ENVIRONMENT)


@pytest.fixture
def infra_files() -> dict[str, bytes]:
    return {
        "environment.json": json.dumps(ENVIRONMENT).encode("utf-8"),
        "datastore.json": json.dumps(DATASTORE).encode("utf-8"),
    }


@pytest.fixture
def source_root(tmp_path: Path, infra_files: dict[str, bytes]) -> Path:
    """{owner}/{repo} trees for the application and the infra repositories."""
    root = tmp_path / "sources"
    app = root / "acme" / "user-app"
    app.mkdir(parents=True)
    (app / "build.gradle").write_text("plugins { id 'java' }\n")
    (app / "src").mkdir()
    (app / "src" / "App.java").write_text("class App {}\n")

    infra = root / "acme" / "user-infra"
    infra.mkdir(parents=True)
    for name, data in infra_files.items():
        (infra / name).write_bytes(data)
    return root


@pytest.fixture
def definition_raw() -> dict[str, Any]:
    return {
        "spec_version": 1,
        "name": "user-pipeline",
        "sources": {
            "kind": "directory",
            "app": {"owner": "acme", "repo": "user-app"},
            "infra": {"owner": "acme", "repo": "user-infra"},
        },
        "build": {
            "repository": "user-repository",
            "phases": {"build": ["export imageTag=$RESOLVED_SOURCE_VERSION"]},
        },
        "deploy": {"template": "UserEcsStack"},
    }
