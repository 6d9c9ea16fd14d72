"""
HTTP surface for audio matching

Thin FastAPI glue over MatchOrchestrator. Tier clients are created once in
the lifespan handler unless an orchestrator is injected (tests).
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import prometheus_client
import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .cache import RedisMatchCache, close_redis_client, get_redis_client
from .config import Settings, get_settings
from .errors import InvalidMatchError, MissingInputError, PersistenceUnavailableError
from .logging_config import configure_logging
from .models import CatalogTrack, EmbeddedVideo
from .orchestrator import MatchOrchestrator
from .resolution import MatchResolutionEngine
from .search_clients import CandidateSearchAdapter
from .store import PostgresMatchStore, close_db_pool, get_db_pool

logger = structlog.get_logger(__name__)


class TrackIn(BaseModel):
    position: str = ""
    title: str
    duration: str = ""
    artists: List[str] = []

    def to_track(self) -> CatalogTrack:
        return CatalogTrack(self.position, self.title, self.duration, list(self.artists))


class EmbeddedVideoIn(BaseModel):
    uri: str
    title: str = ""
    duration: int = 0
    embed: bool = True

    def to_video(self) -> EmbeddedVideo:
        return EmbeddedVideo(uri=self.uri, title=self.title, duration=self.duration, embed=self.embed)


class ResolveRequest(BaseModel):
    admin_id: str
    release_title: Optional[str] = None
    release_artist: Optional[str] = None
    track: Optional[TrackIn] = None
    embedded_videos: List[EmbeddedVideoIn] = []


class ApproveRequest(BaseModel):
    platform: str
    url: str
    confidence: int = Field(ge=0, le=100)
    admin_id: str


class BetterMatch(BaseModel):
    platform: str
    url: str
    confidence: int = Field(ge=0, le=100)


class RejectRequest(BaseModel):
    admin_id: str
    better_match: Optional[BetterMatch] = None


class AudioMatchRequest(BaseModel):
    release_title: str
    release_artist: str
    tracks: List[TrackIn]
    embedded_videos: List[EmbeddedVideoIn] = []


def get_orchestrator(request: Request) -> MatchOrchestrator:
    return request.app.state.orchestrator


async def _build_orchestrator(settings: Settings) -> MatchOrchestrator:
    redis_client = await get_redis_client(settings.redis_url)
    pool = await get_db_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
    )
    store = PostgresMatchStore(pool)
    await store.ensure_schema()

    engine = MatchResolutionEngine.from_settings(settings, CandidateSearchAdapter.from_settings(settings))
    return MatchOrchestrator.from_settings(settings, RedisMatchCache(redis_client), store, engine)


def create_app(match_orchestrator: Optional[MatchOrchestrator] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = match_orchestrator is None
        if owned:
            configure_logging(settings.log_level, settings.log_json)
            app.state.orchestrator = await _build_orchestrator(settings)
        else:
            app.state.orchestrator = match_orchestrator
        logger.info("Audio matching service started", service=settings.service_name, version=settings.service_version)

        yield

        if owned:
            await app.state.orchestrator.engine.search_adapter.close()
            await close_redis_client()
            await close_db_pool()
        logger.info("Audio matching service stopped")

    app = FastAPI(title="Audio Matching", version=settings.service_version, lifespan=lifespan)

    @app.exception_handler(MissingInputError)
    async def missing_input_handler(request: Request, exc: MissingInputError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PersistenceUnavailableError)
    async def persistence_handler(request: Request, exc: PersistenceUnavailableError):
        logger.error("Persistence unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Match storage unavailable"})

    @app.exception_handler(InvalidMatchError)
    async def invalid_match_handler(request: Request, exc: InvalidMatchError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    track_path = "/api/v1/releases/{release_id}/tracks/{track_index}"

    @app.post(track_path + "/match")
    async def resolve_match(
        release_id: int,
        track_index: int,
        body: ResolveRequest,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        record = await orchestrator.resolve(
            release_id,
            track_index,
            body.admin_id,
            release_title=body.release_title,
            release_artist=body.release_artist,
            track=body.track.to_track() if body.track else None,
            embedded_videos=[video.to_video() for video in body.embedded_videos],
        )
        return record.to_dict()

    @app.delete(track_path + "/match")
    async def clear_match(
        release_id: int,
        track_index: int,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        await orchestrator.clear(release_id, track_index)
        return {"release_id": release_id, "track_index": track_index, "cleared": True}

    @app.post(track_path + "/approve")
    async def approve_match(
        release_id: int,
        track_index: int,
        body: ApproveRequest,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        record = await orchestrator.approve(
            release_id, track_index, body.platform, body.url, body.confidence, body.admin_id
        )
        return record.to_dict()

    @app.post(track_path + "/reject")
    async def reject_match(
        release_id: int,
        track_index: int,
        body: RejectRequest,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        better = body.better_match.model_dump() if body.better_match else None
        record = await orchestrator.reject(release_id, track_index, body.admin_id, better)
        return {"match": record.to_dict() if record else None}

    @app.get("/api/v1/releases/{release_id}/matches")
    async def list_matches(
        release_id: int,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        records = await orchestrator.matches_for_release(release_id)
        return {"release_id": release_id, "matches": [record.to_dict() for record in records]}

    @app.delete("/api/v1/releases/{release_id}/matches")
    async def clear_release_matches(
        release_id: int,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        removed = await orchestrator.clear_release(release_id)
        return {"release_id": release_id, "removed": removed}

    @app.post("/api/v1/releases/{release_id}/audio-match")
    async def audio_match(
        release_id: int,
        body: AudioMatchRequest,
        orchestrator: MatchOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        result = await orchestrator.engine.find_matches(
            release_id,
            body.release_title,
            body.release_artist,
            [track.to_track() for track in body.tracks],
            [video.to_video() for video in body.embedded_videos],
        )
        return result.to_dict()

    @app.get("/health")
    async def health(orchestrator: MatchOrchestrator = Depends(get_orchestrator)):
        checks = await orchestrator.health_check()
        # The cache is optional; only a down store makes the service unhealthy
        if not checks["store_up"]:
            status = "unhealthy"
        elif not checks["cache_up"]:
            status = "degraded"
        else:
            status = "healthy"
        return JSONResponse(
            status_code=503 if status == "unhealthy" else 200,
            content={
                "status": status,
                "service": settings.service_name,
                "version": settings.service_version,
                **checks,
            },
        )

    @app.get("/metrics")
    async def metrics():
        return Response(
            prometheus_client.generate_latest(prometheus_client.REGISTRY),
            media_type=prometheus_client.CONTENT_TYPE_LATEST,
        )

    return app
