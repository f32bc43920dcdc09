"""FastAPI application powering the catalog admin panel."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import logging
import uuid
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.types import ASGIApp, Receive, Scope, Send

from ..bootstrap import CatalogServices
from ..config import AppConfig
from ..services.blobs import list_image_ids
from ..services.catalog import BackupRecord, EntityRecord, resolve_entity_type
from ..services.duplicates import DuplicateEntity, DuplicateGroup
from ..services.errors import CatalogError, StoreFailure
from ..services.events import (
    emit_blob_event,
    emit_db_event,
    emit_structured_event,
    emit_task_event,
)
from ..services.jobs import UploadJob
from ..services.review import AutoMergeOutcome


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "catalog_admin_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "catalog_admin_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)

        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("catalog_admin.events"), {})


def _store_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
    correlation = _collect_correlation_context()
    payload = kwargs.get("payload")
    duration_ms = kwargs.get("duration_ms")
    if event_type == "DB_QUERY":
        emit_db_event(
            message,
            payload=payload,
            correlation=correlation,
            duration_ms=duration_ms,
            logger=EVENT_LOGGER,
        )
    elif event_type == "FILE_OP":
        emit_blob_event(
            message,
            payload=payload,
            correlation=correlation,
            duration_ms=duration_ms,
            logger=EVENT_LOGGER,
        )
    elif event_type == "TASK_STATE":
        task_payload = dict(payload or {})
        phase = str(task_payload.pop("phase", message))
        emit_task_event(
            phase,
            message,
            payload=task_payload,
            correlation=correlation,
            logger=EVENT_LOGGER,
        )
    else:
        emit_structured_event(
            event_type,
            message,
            payload=payload,
            correlation=correlation,
            duration_ms=duration_ms,
            logger=EVENT_LOGGER,
        )


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context=context,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


@contextlib.contextmanager
def _catalog_errors() -> Iterator[None]:
    """Translate service failures into HTTP errors."""

    try:
        yield
    except CatalogError as error:
        if isinstance(error, StoreFailure):
            LOGGER.error("Store failure: %s", error)
        raise HTTPException(status_code=error.status_code, detail=str(error)) from error


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    normalized = normalized.rstrip("/")
    if normalized == "":
        return ""
    return normalized


# ----------------------------------------------------------------------
# Serialisation helpers
# ----------------------------------------------------------------------
def _serialize_job(job: UploadJob) -> Dict[str, Any]:
    return asdict(job)


def _serialize_entity(record: EntityRecord, *, connection_count: int, has_image: bool) -> Dict[str, Any]:
    return {
        "id": record.id,
        "type": record.entity_type,
        "displayName": record.display_name,
        "hebrewName": record.hebrew_name,
        "description": record.description,
        "connectionCount": connection_count,
        "hasImage": has_image,
    }


def _serialize_duplicate_entity(entity: DuplicateEntity) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "type": entity.type,
        "displayName": entity.display_name,
        "hebrewName": entity.hebrew_name,
        "connectionCount": entity.connection_count,
        "hasImage": entity.has_image,
    }


def _serialize_group(group: DuplicateGroup) -> Dict[str, Any]:
    return {
        "name": group.name,
        "entities": [_serialize_duplicate_entity(entity) for entity in group.entities],
        "matchType": group.match_type,
        "similarity": round(group.similarity, 4),
        "groupSig": group.signature,
    }


def _serialize_auto_merge(outcome: AutoMergeOutcome) -> Dict[str, Any]:
    return {
        "groupSig": outcome.signature,
        "keepType": outcome.keep_type,
        "keepId": outcome.keep_id,
        "merged": list(outcome.merged),
        "errors": list(outcome.errors),
    }


def _serialize_backup(backup: BackupRecord) -> Dict[str, Any]:
    return {
        "id": backup.id,
        "original_id": backup.original_id,
        "entity_type": backup.entity_type,
        "name": backup.name,
        "hebrew_name": backup.hebrew_name,
        "description": backup.description,
        "has_image": backup.has_image,
        "junction_data": list(backup.junction_data),
        "deleted_at": backup.deleted_at,
    }


# ----------------------------------------------------------------------
# Request payloads
# ----------------------------------------------------------------------
class EnqueueJobPayload(BaseModel):
    courseId: int
    lectureNumber: int


class CancelJobPayload(BaseModel):
    jobId: int


class JobResultPayload(BaseModel):
    succeeded: bool
    output: Optional[str] = None


class MergePayload(BaseModel):
    keepId: int
    keepType: str
    deleteId: int
    deleteType: str
    groupSig: Optional[str] = None


class HistoryPayload(BaseModel):
    group_sig: str
    action: Literal["approved", "declined"]
    keep_type: Optional[str] = None


class RestorePayload(BaseModel):
    deletedId: int


class ReclassifyPayload(BaseModel):
    entityId: int
    fromType: str
    toType: str


class EntityCreatePayload(BaseModel):
    name: str
    hebrewName: Optional[str] = None
    description: Optional[str] = None


class EntityUpdatePayload(BaseModel):
    name: Optional[str] = None
    hebrewName: Optional[str] = None
    description: Optional[str] = None


class LectureLinkPayload(BaseModel):
    lectureId: int
    category: str
    entityId: int
    relationshipType: Literal["discussed", "mentioned"] = "discussed"


class RelationshipPayload(BaseModel):
    junctionId: int
    category: str
    relationshipType: Literal["discussed", "mentioned"]


class DescriptionRequest(BaseModel):
    entityType: str
    entityId: int


class DescriptionConfirmPayload(BaseModel):
    entityType: str
    entityId: int
    action: Literal["confirm", "decline"] = "confirm"
    description: Optional[str] = None


def create_app(
    services: CatalogServices,
    *,
    config: AppConfig,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    normalized_root = _normalize_root_path(root_path)
    app = FastAPI(
        title="Catalog Admin",
        description="Upload job queue and duplicate entity management",
        root_path=normalized_root,
    )
    app.state.services = services
    app.state.config = config
    services.configure_event_emitter(_store_event_emitter)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    catalog = services.catalog
    jobs = services.jobs

    # ------------------------------------------------------------------
    # Upload jobs
    # ------------------------------------------------------------------
    @app.post("/api/upload-jobs/next")
    async def claim_next_job() -> Dict[str, Any]:
        with _catalog_errors():
            job = await asyncio.to_thread(jobs.claim_next)
        if job is not None:
            _log_event("Claimed upload job", job_id=job.id)
        return {"job": _serialize_job(job) if job else None}

    @app.get("/api/upload-jobs")
    async def job_summary() -> Dict[str, Any]:
        with _catalog_errors():
            return jobs.summarize()

    @app.post("/api/upload-jobs")
    async def enqueue_job(payload: EnqueueJobPayload) -> Dict[str, Any]:
        _log_event(
            "Queueing upload job",
            course_id=payload.courseId,
            lecture_number=payload.lectureNumber,
        )
        with _catalog_errors():
            job_id = jobs.enqueue(payload.courseId, payload.lectureNumber)
        return {"jobId": job_id}

    @app.delete("/api/upload-jobs")
    async def cancel_job(payload: CancelJobPayload) -> Dict[str, Any]:
        _log_event("Cancelling upload job", job_id=payload.jobId)
        with _catalog_errors():
            action = jobs.cancel(payload.jobId)
        return {"ok": True, "action": action}

    @app.post("/api/upload-jobs/{job_id}/result")
    async def report_job_result(job_id: int, payload: JobResultPayload) -> Dict[str, Any]:
        with _catalog_errors():
            job = jobs.report_result(job_id, succeeded=payload.succeeded, output=payload.output)
        return {"job": _serialize_job(job)}

    # ------------------------------------------------------------------
    # Duplicates, merge and history
    # ------------------------------------------------------------------
    @app.get("/api/entities/duplicates")
    async def list_duplicates(auto_merge: bool = Query(True, alias="autoMerge")) -> Dict[str, Any]:
        with _catalog_errors():
            result = await asyncio.to_thread(services.reviewer.review, auto_merge=auto_merge)
        return {
            "exact": [_serialize_group(group) for group in result.exact],
            "similar": [_serialize_group(group) for group in result.similar],
            "autoMerged": [_serialize_auto_merge(outcome) for outcome in result.auto_merged],
            "hasHistory": result.has_history,
        }

    @app.post("/api/entities/merge")
    async def merge_entities(payload: MergePayload) -> Dict[str, Any]:
        _log_event(
            "Merging entities",
            keep=f"{payload.keepType}#{payload.keepId}",
            delete=f"{payload.deleteType}#{payload.deleteId}",
        )
        with _catalog_errors():
            result = await asyncio.to_thread(
                services.reviewer.merge,
                payload.keepId,
                payload.keepType,
                payload.deleteId,
                payload.deleteType,
                group_sig=payload.groupSig,
            )
        return {"ok": True, "merged": result.merged, "relinked": result.relinked}

    @app.get("/api/entities/merge-history")
    async def list_merge_history() -> List[Dict[str, Any]]:
        with _catalog_errors():
            entries = services.history.list()
        return [
            {"group_sig": entry.group_sig, "action": entry.action, "keep_type": entry.keep_type}
            for entry in entries
        ]

    @app.post("/api/entities/merge-history")
    async def record_merge_history(payload: HistoryPayload) -> Dict[str, Any]:
        with _catalog_errors():
            services.history.record(payload.group_sig, payload.action, payload.keep_type)
        return {"ok": True}

    @app.delete("/api/entities/merge-history")
    async def reset_merge_history() -> Dict[str, Any]:
        _log_event("Resetting merge history")
        with _catalog_errors():
            removed = services.history.reset()
        return {"ok": True, "removed": removed}

    # ------------------------------------------------------------------
    # Recovery and reclassification
    # ------------------------------------------------------------------
    @app.get("/api/entities/deleted")
    async def list_deleted_entities() -> Dict[str, Any]:
        with _catalog_errors():
            backups = services.recovery.list_deleted()
        return {"deleted": [_serialize_backup(backup) for backup in backups]}

    @app.delete("/api/entities/deleted/{backup_id}")
    async def discard_backup(backup_id: int) -> Dict[str, Any]:
        _log_event("Discarding backup", backup_id=backup_id)
        with _catalog_errors():
            services.recovery.discard(backup_id)
        return {"ok": True}

    @app.post("/api/entities/restore")
    async def restore_entity(payload: RestorePayload) -> Dict[str, Any]:
        _log_event("Restoring entity", backup_id=payload.deletedId)
        with _catalog_errors():
            new_id = await asyncio.to_thread(services.recovery.restore, payload.deletedId)
        return {"ok": True, "newId": new_id}

    @app.post("/api/entities/reclassify")
    async def reclassify_entity(payload: ReclassifyPayload) -> Dict[str, Any]:
        _log_event(
            "Reclassifying entity",
            entity_id=payload.entityId,
            from_type=payload.fromType,
            to_type=payload.toType,
        )
        with _catalog_errors():
            new_id = await asyncio.to_thread(
                services.merger.reclassify, payload.entityId, payload.fromType, payload.toType
            )
        return {"ok": True, "newId": new_id}

    # ------------------------------------------------------------------
    # Entity CRUD
    # ------------------------------------------------------------------
    @app.get("/api/entities/{entity_type}")
    async def list_entities(
        entity_type: str,
        search: Optional[str] = None,
        show_all: bool = Query(True, alias="all"),
    ) -> Dict[str, Any]:
        with _catalog_errors():
            info = resolve_entity_type(entity_type)
            records = catalog.list_entities(info.key)
            counts = catalog.connection_counts(info.key)
            try:
                images = list_image_ids(services.blobs, info.key)
            except StoreFailure as error:
                LOGGER.warning("Could not list %s images: %s", info.key, error)
                images = set()

        needle = (search or "").strip().lower()
        entities = [
            _serialize_entity(
                record,
                connection_count=counts.get(record.id, 0),
                has_image=record.id in images,
            )
            for record in sorted(records, key=lambda item: (item.display_name.lower(), item.id))
            if not needle or needle in record.display_name.lower()
        ]
        if not show_all:
            entities = [entity for entity in entities if not entity["hasImage"]]
        return {"entities": entities, "total": len(records), "withImages": len(images)}

    @app.post("/api/entities/{entity_type}", status_code=status.HTTP_201_CREATED)
    async def create_entity(entity_type: str, payload: EntityCreatePayload) -> Dict[str, Any]:
        with _catalog_errors():
            info = resolve_entity_type(entity_type)
            entity_id = catalog.add_entity(
                info.key,
                payload.name,
                hebrew_name=payload.hebrewName,
                description=payload.description,
            )
            record = catalog.require_entity(info.key, entity_id)
        _log_event("Created entity", entity=f"{info.key}#{entity_id}")
        return {"entity": _serialize_entity(record, connection_count=0, has_image=False)}

    @app.patch("/api/entities/{entity_type}/{entity_id}")
    async def update_entity(
        entity_type: str, entity_id: int, payload: EntityUpdatePayload
    ) -> Dict[str, Any]:
        field_map: Tuple[Tuple[str, str], ...] = (
            ("name", "name"),
            ("hebrewName", "hebrew_name"),
            ("description", "description"),
        )
        updates = {
            target: getattr(payload, source)
            for source, target in field_map
            if source in payload.model_fields_set
        }
        with _catalog_errors():
            catalog.update_entity(entity_type, entity_id, **updates)
        return {"ok": True}

    @app.delete("/api/entities/{entity_type}/{entity_id}")
    async def delete_entity(entity_type: str, entity_id: int) -> Dict[str, Any]:
        _log_event("Deleting entity", entity=f"{entity_type}#{entity_id}")
        with _catalog_errors():
            backup_id = services.recovery.soft_delete(entity_type, entity_id)
        return {"ok": True, "backupId": backup_id}

    # ------------------------------------------------------------------
    # Lecture links
    # ------------------------------------------------------------------
    @app.get("/api/lecture-entities")
    async def list_lecture_entities(
        lecture_id: int = Query(..., alias="lectureId"),
        category: str = Query(...),
    ) -> Dict[str, Any]:
        with _catalog_errors():
            rows = catalog.list_lecture_links(lecture_id, category)
        return {
            "entities": [
                {
                    "junctionId": junction.id,
                    "entityId": entity.id,
                    "displayName": entity.display_name,
                    "hebrewName": entity.hebrew_name,
                    "relationshipType": junction.relationship_type,
                }
                for junction, entity in rows
            ]
        }

    @app.post("/api/lecture-entities")
    async def link_lecture_entity(payload: LectureLinkPayload) -> Dict[str, Any]:
        with _catalog_errors():
            if catalog.get_lecture(payload.lectureId) is None:
                raise HTTPException(status_code=404, detail="Lecture not found")
            catalog.require_entity(payload.category, payload.entityId)
            junction_id = catalog.link_entity(
                payload.lectureId,
                payload.category,
                payload.entityId,
                payload.relationshipType,
            )
        return {"ok": True, "junctionId": junction_id}

    @app.patch("/api/lecture-entities")
    async def update_lecture_relationship(payload: RelationshipPayload) -> Dict[str, Any]:
        with _catalog_errors():
            catalog.set_relationship_type(
                payload.category, payload.junctionId, payload.relationshipType
            )
        return {"ok": True}

    # ------------------------------------------------------------------
    # AI descriptions
    # ------------------------------------------------------------------
    @app.post("/api/generate/entity-description")
    async def generate_entity_description(payload: DescriptionRequest) -> Dict[str, Any]:
        _log_event(
            "Generating entity description",
            entity=f"{payload.entityType}#{payload.entityId}",
        )
        with _catalog_errors():
            proposal = await asyncio.to_thread(
                services.descriptions.generate, payload.entityType, payload.entityId
            )
        return {
            "type": "entity_desc",
            "entityType": proposal.entity_type,
            "entityId": proposal.entity_id,
            "name": proposal.name,
            "before": proposal.before,
            "after": proposal.after,
        }

    @app.post("/api/generate/entity-description/confirm")
    async def confirm_entity_description(payload: DescriptionConfirmPayload) -> Dict[str, Any]:
        if payload.action == "decline":
            return {"ok": True, "message": "Declined, no changes made"}
        if payload.description is None:
            raise HTTPException(status_code=400, detail="description is required")
        with _catalog_errors():
            services.descriptions.confirm(
                payload.entityType, payload.entityId, payload.description
            )
        return {"ok": True}

    @app.get("/healthz", response_class=Response)
    async def healthcheck() -> Response:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


__all__ = ["ContextualLoggerAdapter", "RequestContextMiddleware", "create_app"]
