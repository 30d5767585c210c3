from __future__ import annotations

from typing import Any

from user_pipeline.artifacts import ArtifactPayload
from user_pipeline.collaborators import SourceCoordinate, SourceProvider, SourceSnapshot
from user_pipeline.core import EventType
from user_pipeline.pipeline import ActionContext, ActionFn


def snapshot_from_payload(payload: ArtifactPayload) -> SourceSnapshot:
    """Rebuild the fetched snapshot from a source artifact."""
    m = payload.meta
    return SourceSnapshot(
        coordinate=SourceCoordinate(owner=m["owner"], repo=m["repo"], ref=m["ref"]),
        version=m["version"],
        files=payload.files,
    )


def fetch_source(provider: SourceProvider) -> ActionFn:
    """
    Action fetching `config["source"]` (a SourceCoordinate) into the single
    declared output slot.
    """

    def _fn(ctx: ActionContext) -> dict[str, Any]:
        coordinate: SourceCoordinate = ctx.config["source"]
        (slot,) = ctx.spec.outputs

        snap = provider.fetch(coordinate)
        ref = ctx.write_output(
            slot,
            snap.files,
            meta={
                "owner": coordinate.owner,
                "repo": coordinate.repo,
                "ref": coordinate.ref,
                "version": snap.version,
            },
        )
        ctx.emit(
            EventType.SOURCE_FETCHED,
            source=str(coordinate),
            version=snap.version,
            sha256=ref.sha256,
        )
        return {
            "source": str(coordinate),
            "version": snap.version,
            "_metrics": {"files": ref.files, "bytes": ref.bytes},
        }

    return _fn
