"""FACE_GROUPING: cluster ungrouped faces into FaceGroup rows."""

from __future__ import annotations

import time
from typing import Dict, Optional

from sqlalchemy import select, update

from frame_pipeline.clustering import EmbeddedItem, single_link_groups
from frame_pipeline.db import Album, DetectedFace, FaceGroup, Image
from frame_pipeline.handlers.base import HandlerContext
from frame_pipeline.payloads import FaceGroupingPayload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "grouping"})


def suggested_group_name(album_id: Optional[str], album_names: Dict[str, Optional[str]]) -> Optional[str]:
    if not album_id:
        return None
    return f"Person in {album_names.get(album_id) or album_id}"


def handle_face_grouping(ctx: HandlerContext, payload: FaceGroupingPayload, job_id: str) -> None:
    threshold = payload.threshold if payload.threshold is not None else ctx.settings.grouping.threshold

    with ctx.session_factory() as session:
        query = (
            select(DetectedFace.id, DetectedFace.embedding, Image.album_id)
            .join(Image, DetectedFace.image_id == Image.id)
            .where(DetectedFace.face_group_id.is_(None))
        )
        if payload.album_id:
            query = query.where(Image.album_id == payload.album_id)
        # Newest first; cluster membership depends on this order.
        query = query.order_by(DetectedFace.created_at.desc(), DetectedFace.id)
        rows = session.execute(query).all()

        if not rows:
            LOGGER.info("face_grouping_nothing_to_do", extra={"album_id": payload.album_id, "job_id": job_id})
            return

        album_of = {face_id: album_id for face_id, _, album_id in rows}
        album_ids = {album_id for album_id in album_of.values() if album_id}
        album_names: Dict[str, Optional[str]] = {}
        if album_ids:
            album_names = dict(session.execute(select(Album.id, Album.name).where(Album.id.in_(album_ids))).all())

        clusters = single_link_groups(
            [EmbeddedItem(key=face_id, embedding=embedding) for face_id, embedding, _ in rows],
            threshold,
        )

        now = time.time()
        for members in clusters:
            album_id = album_of[members[0]]
            group = FaceGroup(
                album_id=album_id,
                face_count=len(members),
                suggested_name=suggested_group_name(album_id, album_names),
                created_at=now,
            )
            session.add(group)
            session.flush()
            session.execute(
                update(DetectedFace)
                .where(DetectedFace.id.in_(members), DetectedFace.face_group_id.is_(None))
                .values(face_group_id=group.id)
            )
        session.commit()

    LOGGER.info(
        "face_grouping_complete",
        extra={
            "album_id": payload.album_id,
            "job_id": job_id,
            "faces": len(rows),
            "groups": len(clusters),
            "threshold": threshold,
        },
    )


__all__ = ["handle_face_grouping", "suggested_group_name"]
