from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException
from structlog.contextvars import bind_contextvars, reset_contextvars

from tubedesc.dependencies import ServiceContainer, get_services
from tubedesc.models.api_contracts import (
    AuthorizeUrlResponse,
    ChannelConnectRequest,
    ChannelConnectResponse,
    ChannelResponse,
    ContainerCreateRequest,
    ContainerResponse,
    ContainerUpdateRequest,
    ContainerUpdateResponse,
    HistoryVersion,
    JobEnqueuedResponse,
    JobResponse,
    TemplateCreateRequest,
    TemplateImpactContainer,
    TemplateImpactResponse,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    TemplateResponse,
    TemplateUpdateRequest,
    TemplateUpdateResponse,
    VideoAssignRequest,
    VideoAssignResponse,
    VideoHistoryResponse,
    VideoPreviewResponse,
    VideosUpdateRequest,
    VideoVariablesRequest,
)
from tubedesc.repositories.channel_repository import ChannelRecord
from tubedesc.services.errors import ChannelConnectError, CompositionValidationError
from tubedesc.services.template_engine import (
    build_description,
    exceeds_description_limit,
    parse_user_variables,
)

router = APIRouter()

Services = Annotated[ServiceContainer, Depends(get_services)]


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required.")
    return x_user_id.strip()


UserId = Annotated[str, Depends(get_user_id)]


def _first(job_ids: list[str]) -> str | None:
    return job_ids[0] if job_ids else None


def _unknown_templates(services: ServiceContainer, template_ids: list[str], user_id: str) -> list[str]:
    owned = services.composition_repository.get_templates(template_ids)
    return [
        template_id
        for template_id in template_ids
        if template_id not in owned or owned[template_id].user_id != user_id
    ]


def _channel_response(channel: ChannelRecord) -> ChannelResponse:
    return ChannelResponse(
        id=channel.id,
        channel_id=channel.channel_id,
        title=channel.title,
        thumbnail_url=channel.thumbnail_url,
        subscriber_count=channel.subscriber_count,
        token_status=channel.token_status,
        sync_status=channel.sync_status,
        last_synced_at=channel.last_synced_at,
        reconnect_required=channel.reconnect_required,
    )


@router.get(
    "/oauth/authorize-url",
    response_model=AuthorizeUrlResponse,
    tags=["channels"],
    operation_id="oauth_authorize_url",
)
def oauth_authorize_url(
    services: Services,
    _user_id: UserId,
    state: str | None = None,
) -> AuthorizeUrlResponse:
    url = services.channel_connect_service.authorization_url(state=state)
    return AuthorizeUrlResponse(url=url)


@router.post(
    "/channels/connect",
    response_model=ChannelConnectResponse,
    status_code=201,
    tags=["channels"],
    operation_id="channel_connect",
)
def channel_connect(
    request: ChannelConnectRequest,
    services: Services,
    user_id: UserId,
) -> ChannelConnectResponse:
    try:
        result = services.channel_connect_service.connect(user_id=user_id, code=request.code)
    except ChannelConnectError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ChannelConnectResponse(
        channel=_channel_response(result.channel),
        sync_job_id=result.sync_job_id,
    )


@router.delete(
    "/channels/{channel_id}",
    status_code=204,
    tags=["channels"],
    operation_id="channel_disconnect",
)
def channel_disconnect(channel_id: str, services: Services, user_id: UserId) -> None:
    if not services.channel_connect_service.disconnect(channel_id=channel_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Channel not found.")


@router.get(
    "/channels/{channel_id}",
    response_model=ChannelResponse,
    tags=["channels"],
    operation_id="channel_get",
)
def channel_get(channel_id: str, services: Services, user_id: UserId) -> ChannelResponse:
    channel = services.channel_repository.get_channel(channel_id, user_id=user_id)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found.")
    return _channel_response(channel)


@router.post(
    "/channels/{channel_id}/sync",
    response_model=JobEnqueuedResponse,
    status_code=202,
    tags=["channels"],
    operation_id="channel_sync",
)
def channel_sync(channel_id: str, services: Services, user_id: UserId) -> JobEnqueuedResponse:
    channel = services.channel_repository.get_channel(channel_id, user_id=user_id)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found.")
    if channel.reconnect_required:
        raise HTTPException(
            status_code=409,
            detail="Channel credentials are invalid; reconnect the channel before syncing.",
        )
    job_id = services.job_runner.enqueue_channel_sync(channel_id=channel.id, user_id=user_id)
    return JobEnqueuedResponse(job_id=job_id, job_ids=[job_id])


@router.post(
    "/videos/update",
    response_model=JobEnqueuedResponse,
    status_code=202,
    tags=["videos"],
    operation_id="videos_update",
)
def videos_update(
    request: VideosUpdateRequest,
    services: Services,
    user_id: UserId,
) -> JobEnqueuedResponse:
    job_ids = services.job_runner.enqueue_video_update(video_ids=request.video_ids, user_id=user_id)
    return JobEnqueuedResponse(
        job_id=_first(job_ids),
        job_ids=job_ids,
        video_count=len(set(request.video_ids)),
    )


@router.get(
    "/videos/{video_id}/preview",
    response_model=VideoPreviewResponse,
    tags=["videos"],
    operation_id="video_preview",
)
def video_preview(video_id: str, services: Services, user_id: UserId) -> VideoPreviewResponse:
    video = services.video_repository.get_video(video_id, user_id=user_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found.")

    composed = services.update_dispatcher.compose_videos([video]).get(video.id)
    if composed is None:
        return VideoPreviewResponse(
            video_id=video.id,
            remote_video_id=video.video_id,
            container_id=video.container_id,
            template_ids=[],
            description=None,
            current_description=video.current_description,
            changed=False,
            length=0,
            exceeds_limit=False,
        )
    return VideoPreviewResponse(
        video_id=video.id,
        remote_video_id=video.video_id,
        container_id=composed.container.id,
        template_ids=[template.id for template in composed.templates],
        description=composed.description,
        current_description=video.current_description,
        changed=composed.changed,
        length=len(composed.description),
        exceeds_limit=exceeds_description_limit(composed.description),
    )


@router.get(
    "/videos/{video_id}/history",
    response_model=VideoHistoryResponse,
    tags=["videos"],
    operation_id="video_history",
)
def video_history(video_id: str, services: Services, user_id: UserId) -> VideoHistoryResponse:
    video = services.video_repository.get_video(video_id, user_id=user_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found.")
    return VideoHistoryResponse(
        video_id=video.id,
        versions=[
            HistoryVersion(
                version_number=entry.version_number,
                description=entry.description,
                created_by=entry.created_by,
                created_at=entry.created_at,
            )
            for entry in services.video_repository.list_history(video.id)
        ],
    )


@router.post(
    "/videos/{video_id}/assign",
    response_model=VideoAssignResponse,
    status_code=202,
    tags=["videos"],
    operation_id="video_assign",
)
def video_assign(
    video_id: str,
    request: VideoAssignRequest,
    services: Services,
    user_id: UserId,
) -> VideoAssignResponse:
    video = services.video_repository.get_video(video_id, user_id=user_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found.")
    if video.container_id is not None:
        raise HTTPException(
            status_code=400,
            detail="Video is already assigned to a container; unassign it first.",
        )
    container = services.composition_repository.get_container(request.container_id, user_id=user_id)
    if container is None:
        raise HTTPException(status_code=404, detail="Container not found.")

    services.video_repository.assign_container(video.id, container.id)
    job_ids = services.job_runner.enqueue_video_update(video_ids=[video.id], user_id=user_id)
    return VideoAssignResponse(
        video_id=video.id,
        container_id=container.id,
        update_job_id=_first(job_ids),
    )


@router.put(
    "/videos/{video_id}/variables",
    response_model=JobEnqueuedResponse,
    tags=["videos"],
    operation_id="video_variables_set",
)
def video_variables_set(
    video_id: str,
    request: VideoVariablesRequest,
    services: Services,
    user_id: UserId,
) -> JobEnqueuedResponse:
    video = services.video_repository.get_video(video_id, user_id=user_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found.")

    grouped: dict[str, dict[str, str]] = {}
    for binding in request.variables:
        grouped.setdefault(binding.template_id, {})[binding.name] = binding.value

    for template_id in grouped:
        if services.composition_repository.get_template(template_id, user_id=user_id) is None:
            raise HTTPException(status_code=400, detail=f"Unknown template: {template_id}")

    for template_id, values in grouped.items():
        services.composition_repository.set_video_variables(
            video_id=video.id,
            template_id=template_id,
            values=values,
        )
    job_ids = services.job_runner.enqueue_video_update(video_ids=[video.id], user_id=user_id)
    return JobEnqueuedResponse(job_id=_first(job_ids), job_ids=job_ids, video_count=1)


@router.post(
    "/templates",
    response_model=TemplateResponse,
    status_code=201,
    tags=["templates"],
    operation_id="template_create",
)
def template_create(
    request: TemplateCreateRequest,
    services: Services,
    user_id: UserId,
) -> TemplateResponse:
    template = services.composition_repository.create_template(
        user_id=user_id,
        name=request.name,
        content=request.content,
    )
    return TemplateResponse(
        id=template.id,
        name=template.name,
        content=template.content,
        variables=parse_user_variables(template.content),
    )


@router.post(
    "/templates/preview",
    response_model=TemplatePreviewResponse,
    tags=["templates"],
    operation_id="template_preview",
)
def template_preview(request: TemplatePreviewRequest, _user_id: UserId) -> TemplatePreviewResponse:
    try:
        description = build_description(
            request.templates,
            request.variables,
            request.separator,
            request.video_id,
        )
    except CompositionValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    variables: list[str] = []
    for content in request.templates:
        for name in parse_user_variables(content):
            if name not in variables:
                variables.append(name)
    return TemplatePreviewResponse(
        description=description,
        variables=variables,
        length=len(description),
        exceeds_limit=exceeds_description_limit(description),
    )


@router.get(
    "/templates/{template_id}/impact",
    response_model=TemplateImpactResponse,
    tags=["templates"],
    operation_id="template_impact",
)
def template_impact(
    template_id: str,
    services: Services,
    user_id: UserId,
) -> TemplateImpactResponse:
    if services.composition_repository.get_template(template_id, user_id=user_id) is None:
        raise HTTPException(status_code=404, detail="Template not found.")

    container_ids = services.composition_repository.list_container_ids_using_template(
        template_id,
        user_id=user_id,
    )
    containers = services.composition_repository.get_containers(container_ids)
    impact: list[TemplateImpactContainer] = []
    video_ids: list[str] = []
    for container_id in container_ids:
        container = containers.get(container_id)
        if container is None:
            continue
        container_video_ids = services.video_repository.list_video_ids_for_containers([container_id])
        video_ids.extend(container_video_ids)
        impact.append(
            TemplateImpactContainer(
                id=container.id,
                name=container.name,
                video_count=len(container_video_ids),
            )
        )
    return TemplateImpactResponse(
        template_id=template_id,
        containers=impact,
        video_ids=video_ids,
        count=len(video_ids),
    )


@router.patch(
    "/templates/{template_id}",
    response_model=TemplateUpdateResponse,
    tags=["templates"],
    operation_id="template_update",
)
def template_update(
    template_id: str,
    request: TemplateUpdateRequest,
    services: Services,
    user_id: UserId,
) -> TemplateUpdateResponse:
    existing = services.composition_repository.get_template(template_id, user_id=user_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Template not found.")

    updated = services.composition_repository.update_template(
        template_id,
        user_id=user_id,
        name=request.name,
        content=request.content,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Template not found.")

    context_tokens = bind_contextvars(template_id=template_id)
    try:
        job_ids: list[str] = []
        video_ids: list[str] = []
        if request.content is not None and request.content != existing.content:
            container_ids = services.composition_repository.list_container_ids_using_template(
                template_id,
                user_id=user_id,
            )
            video_ids = services.video_repository.list_video_ids_for_containers(container_ids)
            job_ids = services.job_runner.enqueue_video_update(video_ids=video_ids, user_id=user_id)
    finally:
        reset_contextvars(**context_tokens)

    return TemplateUpdateResponse(
        id=updated.id,
        name=updated.name,
        content=updated.content,
        variables=parse_user_variables(updated.content),
        update_job_id=_first(job_ids),
        update_job_ids=job_ids,
        affected_videos=len(video_ids),
    )


@router.post(
    "/containers",
    response_model=ContainerResponse,
    status_code=201,
    tags=["containers"],
    operation_id="container_create",
)
def container_create(
    request: ContainerCreateRequest,
    services: Services,
    user_id: UserId,
) -> ContainerResponse:
    unknown = _unknown_templates(services, request.template_order, user_id)
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown templates in template_order: {', '.join(unknown)}",
        )
    container = services.composition_repository.create_container(
        user_id=user_id,
        name=request.name,
        template_order=request.template_order,
        separator=request.separator,
    )
    return ContainerResponse(
        id=container.id,
        name=container.name,
        separator=container.separator,
        template_order=list(container.template_order),
    )


@router.patch(
    "/containers/{container_id}",
    response_model=ContainerUpdateResponse,
    tags=["containers"],
    operation_id="container_update",
)
def container_update(
    container_id: str,
    request: ContainerUpdateRequest,
    services: Services,
    user_id: UserId,
) -> ContainerUpdateResponse:
    existing = services.composition_repository.get_container(container_id, user_id=user_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Container not found.")

    if request.template_order is not None:
        unknown = _unknown_templates(services, request.template_order, user_id)
        if unknown:
            raise HTTPException(
                status_code=400,
                detail=f"Unknown templates in template_order: {', '.join(unknown)}",
            )

    updated = services.composition_repository.update_container(
        container_id,
        user_id=user_id,
        separator=request.separator,
        template_order=request.template_order,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Container not found.")

    job_ids: list[str] = []
    video_ids: list[str] = []
    if (
        updated.separator != existing.separator
        or updated.template_order != existing.template_order
    ):
        video_ids = services.video_repository.list_video_ids_for_containers([container_id])
        job_ids = services.job_runner.enqueue_video_update(video_ids=video_ids, user_id=user_id)

    return ContainerUpdateResponse(
        id=updated.id,
        name=updated.name,
        separator=updated.separator,
        template_order=list(updated.template_order),
        update_job_id=_first(job_ids),
        update_job_ids=job_ids,
        affected_videos=len(video_ids),
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    tags=["jobs"],
    operation_id="job_get",
)
def job_get(job_id: str, services: Services, user_id: UserId) -> JobResponse:
    job = services.jobs_repository.get_job(job_id)
    if job is None or job.payload.get("user_id") != user_id:
        raise HTTPException(status_code=404, detail="Job not found.")
    return JobResponse(
        job_id=job.job_id,
        job_type=job.job_type,
        status=job.status,
        attempts=job.attempts,
        next_run_at=job.next_run_at,
        last_error=job.last_error,
        result=job.result,
    )
