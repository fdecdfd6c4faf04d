"""
KitForge Recolor Pipeline
Orchestrates one lock-geometry recolor: fetch masks and template, composite,
validate geometry and colors, then publish the image and its RenderSpec.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from app.config import MASK_ROLES, REQUIRED_MASK_ROLES, RecolorSettings
from app.errors import (
    AuthorizationError, InfraError, MasksMissingError, NotFoundError, RecolorError,
    RequestValidationError,
)
from app.schemas import RecolorRequest, RecolorResult, RenderMasks, RenderSpec
from app.services.imaging import ImageDecodeError, Mask, RasterImage, decode_image, decode_mask, encode_png
from app.services.recolor.compositor import recolor
from app.services.recolor.guards import assert_color_targets, assert_geometry_locked
from app.services.reliability import TimeoutManager
from app.services.storage import (
    STATUS_RENDER_FAILED, STATUS_RENDERING, DesignRequestStore, ImageFetcher, ObjectStore, Requester,
)
from app.utils.ids import generate_request_id, render_object_name, utc_timestamp
from app.utils.logging import get_logger
from app.utils.metrics import get_metrics


class PipelineState(str, Enum):
    START = "start"
    MASKS_FETCHED = "masks-fetched"
    COMPOSITED = "composited"
    GEOMETRY_CHECKED = "geometry-checked"
    COLOR_CHECKED = "color-checked"
    PUBLISHED = "published"
    FAILED = "failed"


class PipelineRun:
    """Mutable bookkeeping for a single run; never shared between runs."""

    def __init__(self, request_id: str, request: RecolorRequest):
        self.request_id = request_id
        self.request = request
        self.state = PipelineState.START
        self.last_state = PipelineState.START
        self.failure_reason: Optional[str] = None
        self.marked_rendering = False
        self.timings: Dict[str, float] = {}
        self._stage_start = time.time()

    def advance(self, state: PipelineState) -> float:
        """Move to ``state`` and return the elapsed time of the finished stage in ms."""
        now = time.time()
        elapsed = (now - self._stage_start) * 1000
        self.timings[state.value] = elapsed
        self._stage_start = now
        self.state = state
        self.last_state = state
        return elapsed

    def fail(self, reason: str) -> None:
        self.failure_reason = reason
        self.state = PipelineState.FAILED


def mask_url(mask_base_url: str, design_slug: str, role: str) -> str:
    """Mask storage convention: {maskBase}/{designSlug}/{role}.png"""
    return f"{mask_base_url.rstrip('/')}/{design_slug}/{role}.png"


def parse_recolor_request(payload: Union[RecolorRequest, Mapping[str, Any]]) -> RecolorRequest:
    """
    Validate a raw request payload.

    Raises:
        RequestValidationError: with the offending fields
    """
    if isinstance(payload, RecolorRequest):
        return payload
    try:
        return RecolorRequest.model_validate(payload)
    except ValidationError as e:
        errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
        raise RequestValidationError(
            "Invalid recolor request: " + "; ".join(f"{x['field']}: {x['message']}" for x in errors),
            {"errors": errors},
        ) from None


def decode_inputs(template_bytes: bytes,
                  mask_bytes: Mapping[str, Optional[bytes]],
                  protected_boxes: List[Tuple[float, float, float, float]]) -> Tuple[RasterImage, Dict[str, Mask]]:
    """
    Decode the template and masks, align masks to the template size and carve
    protected boxes out of every mask.

    Raises:
        RequestValidationError: if any image cannot be decoded
    """
    logger = get_logger()
    try:
        template = decode_image(template_bytes)
    except ImageDecodeError as e:
        raise RequestValidationError(f"Template image could not be decoded: {e}", {"source": "template"}) from e

    masks: Dict[str, Mask] = {}
    for role, data in mask_bytes.items():
        if data is None:
            continue
        try:
            mask = decode_mask(data, role)
        except ImageDecodeError as e:
            raise RequestValidationError(f"Mask '{role}' could not be decoded: {e}", {"source": role}) from e

        if (mask.width, mask.height) != template.size:
            logger.debug(f"Resizing {role} mask {mask.width}x{mask.height} to {template.width}x{template.height}")
            mask = mask.resized_to(template.width, template.height)
        if protected_boxes:
            mask = mask.without_boxes(protected_boxes)
        if mask.coverage() == 0.0:
            logger.warning(f"Mask '{role}' has no inside pixels", extra={"role": role})
        masks[role] = mask

    return template, masks


class RecolorPipeline:
    """
    Lock-geometry recolor in template mode.

    States: start -> masks-fetched -> composited -> geometry-checked ->
    color-checked -> published, or failed at any gate. Nothing is uploaded or
    persisted unless every gate passed. No step is retried.
    """

    def __init__(self,
                 fetcher: ImageFetcher,
                 object_store: ObjectStore,
                 design_store: DesignRequestStore,
                 settings: RecolorSettings,
                 timeout_manager: Optional[TimeoutManager] = None):
        self.fetcher = fetcher
        self.object_store = object_store
        self.design_store = design_store
        self.settings = settings
        self.timeouts = timeout_manager or TimeoutManager(settings.timeout_ms)
        self.logger = get_logger()

    def mask_urls(self, design_slug: str) -> Dict[str, str]:
        return {role: mask_url(self.settings.mask_base_url, design_slug, role) for role in MASK_ROLES}

    async def run(self,
                  request: Union[RecolorRequest, Mapping[str, Any]],
                  requester: Optional[Requester] = None) -> RecolorResult:
        """
        Execute one recolor.

        Args:
            request: RecolorRequest or raw payload (camelCase or snake_case keys)
            requester: Authenticated caller; when given, must own the design
                request or be an admin

        Returns:
            RecolorResult with the published output URL and RenderSpec

        Raises:
            RecolorError subclasses; see app.errors
        """
        request = parse_recolor_request(request)
        run = PipelineRun(generate_request_id(), request)
        metrics = get_metrics()
        metrics.increment_request_count()
        start = time.time()

        self.logger.info(f"[{run.request_id}] Starting recolor", extra={
            "request_id": run.request_id,
            "design_request_id": request.design_request_id,
            "design_slug": request.design_slug,
            "colors": request.colors.model_dump(exclude_none=True),
        })

        try:
            async with self.timeouts.timeout("recolor", self.settings.timeout_ms):
                await self._gate(run, requester)
                result = await self._execute(run, start)
        except RecolorError as e:
            await self._handle_failure(run, e)
            raise
        except asyncio.CancelledError:
            cancelled = InfraError("Recolor cancelled by caller", {"cancelled": True})
            await asyncio.shield(self._handle_failure(run, cancelled))
            raise
        except Exception as e:
            wrapped = InfraError(f"Unexpected recolor failure: {e}", {"exception": type(e).__name__})
            await self._handle_failure(run, wrapped)
            raise wrapped from e

        metrics.increment_success_count()
        metrics.record_timing("recolor_total", result.duration_ms)
        self.logger.info(f"[{run.request_id}] Recolor published", extra={
            "request_id": run.request_id,
            "output_url": result.output_url,
            "duration_ms": result.duration_ms,
        })
        return result

    async def _gate(self, run: PipelineRun, requester: Optional[Requester]) -> None:
        design_request_id = run.request.design_request_id
        record = await self.design_store.fetch_design_record(design_request_id)
        if record is None:
            raise NotFoundError(f"Design request {design_request_id} not found",
                                {"design_request_id": design_request_id})
        if requester is not None and not requester.can_access(record):
            raise AuthorizationError("Not authorized for this design request",
                                     {"design_request_id": design_request_id, "user_id": requester.user_id})

        await self.design_store.update_status(design_request_id, STATUS_RENDERING)
        run.marked_rendering = True

    async def _fetch_masks(self, urls: Dict[str, str]) -> Dict[str, Optional[bytes]]:
        roles = list(urls)
        tasks = [asyncio.create_task(self.fetcher.try_download(urls[role])) for role in roles]
        try:
            downloads = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return dict(zip(roles, downloads))

    async def _execute(self, run: PipelineRun, start: float) -> RecolorResult:
        request = run.request
        settings = self.settings
        logger = self.logger

        # 1. Masks, required ones first-class
        urls = self.mask_urls(request.design_slug)
        mask_bytes = await self._fetch_masks(urls)
        missing = {role: mask_bytes[role] is None for role in REQUIRED_MASK_ROLES}
        if any(missing.values()):
            raise MasksMissingError(request.design_slug, missing)
        elapsed = run.advance(PipelineState.MASKS_FETCHED)
        logger.stage(run.request_id, "masks", elapsed, trims=mask_bytes["trims"] is not None)

        # 2. Template + decode
        template_bytes = await self.fetcher.download_image(request.template_url)
        boxes = [box.as_tuple() for box in request.protected_boxes]
        template, masks = await asyncio.to_thread(decode_inputs, template_bytes, mask_bytes, boxes)

        # 3. Composite
        candidate = await asyncio.to_thread(
            recolor, template, request.colors, masks,
            settings.precedence, settings.shading_strength, settings.mask_threshold,
        )
        elapsed = run.advance(PipelineState.COMPOSITED)
        logger.stage(run.request_id, "composite", elapsed, width=template.width, height=template.height)

        # 4. Geometry gate
        geometry = await asyncio.to_thread(
            assert_geometry_locked, template, candidate,
            alpha_tolerance=settings.alpha_tolerance,
            max_drift=settings.max_drift,
            max_edge_loss=settings.max_edge_loss,
        )
        get_metrics().record_drift(geometry.alpha_drift)
        elapsed = run.advance(PipelineState.GEOMETRY_CHECKED)
        logger.stage(run.request_id, "geometry", elapsed, **geometry.to_dict())

        # 5. Color gate
        reports = await asyncio.to_thread(
            assert_color_targets, candidate, masks, request.colors,
            max_delta_e=settings.max_delta_e,
            precedence=settings.precedence,
            threshold=settings.mask_threshold,
        )
        for report in reports:
            get_metrics().record_delta_e(report.region, report.delta_e)
        elapsed = run.advance(PipelineState.COLOR_CHECKED)
        logger.stage(run.request_id, "color", elapsed,
                     delta_e={r.region: round(r.delta_e, 2) for r in reports})

        # 6. Publish
        png_bytes = await asyncio.to_thread(encode_png, candidate)
        object_name = render_object_name(request.design_request_id)
        output_url = await self.object_store.upload_image(settings.output_bucket, object_name, png_bytes)

        render_spec = RenderSpec(
            colors=request.colors,
            template_url=request.template_url,
            masks=RenderMasks(
                body=urls["body"],
                sleeves=urls["sleeves"],
                trims=urls["trims"] if "trims" in masks else None,
            ),
            timestamp=utc_timestamp(),
        )
        try:
            await self.design_store.persist_render_result(request.design_request_id, render_spec, output_url)
        except BaseException:
            await asyncio.shield(self._discard_upload(run, settings.output_bucket, object_name))
            raise
        run.advance(PipelineState.PUBLISHED)

        return RecolorResult(
            output_url=output_url,
            render_spec=render_spec,
            duration_ms=int((time.time() - start) * 1000),
        )

    async def _discard_upload(self, run: PipelineRun, bucket: str, object_name: str) -> None:
        """Remove an uploaded render whose RenderSpec was never persisted."""
        try:
            await self.object_store.delete_image(bucket, object_name)
            self.logger.warning(f"[{run.request_id}] Removed unpublished render {bucket}/{object_name}")
        except RecolorError as delete_error:
            self.logger.error(f"[{run.request_id}] Could not remove unpublished render", extra={
                "request_id": run.request_id,
                "object": f"{bucket}/{object_name}",
                "error": delete_error.message,
            })

    async def _handle_failure(self, run: PipelineRun, error: RecolorError) -> None:
        run.fail(error.code)
        error.details.setdefault("stage", run.last_state.value)
        get_metrics().increment_failure_count(error.code)
        self.logger.error(f"[{run.request_id}] Recolor failed: {error.code}", extra={
            "request_id": run.request_id,
            "design_request_id": run.request.design_request_id,
            "stage": run.last_state.value,
            "error": error.message,
        })

        if not run.marked_rendering:
            return
        try:
            await self.design_store.update_status(run.request.design_request_id, STATUS_RENDER_FAILED)
        except RecolorError as status_error:
            self.logger.error(f"[{run.request_id}] Could not mark design request as failed", extra={
                "request_id": run.request_id,
                "error": status_error.message,
            })
