"""Compose stage: join processed segments, lay in background music, publish the render."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any

from ...exceptions import JobFatalError
from ...utils.logging import get_logger
from ..models import StepKind
from ..payloads import BackgroundMusicOutput, ConcatenateOutput, ExportOutput
from .base import StepContext, WorkflowStep

__all__ = ["AddBackgroundMusicStep", "ConcatenateStep", "ExportStep"]

LOGGER = get_logger(__name__)

PUBLIC_SCHEMES = ("http://", "https://")


class ConcatenateStep(WorkflowStep):
    """Concatenate every successfully processed segment in ordinal order."""

    kind = StepKind.CONCATENATE

    async def execute(self, context: StepContext) -> ConcatenateOutput:
        context.abort.raise_if_aborted()
        job = context.job
        segments = sorted(
            (
                segment
                for segment in context.jobs.list_segments(job.id)
                if not segment.skipped and segment.is_terminal_success
            ),
            key=lambda segment: segment.ordinal,
        )
        if not segments:
            raise JobFatalError(f"Job {job.id} has no processed segments to concatenate.")

        refs = [segment.final_artifact_ref for segment in segments if segment.final_artifact_ref]
        artifact_ref = await asyncio.wait_for(
            context.services.media.concatenate(refs),
            timeout=context.services.timeouts.media,
        )
        context.checkpoints.update_state(job.id, final_artifact_ref=artifact_ref)
        LOGGER.info("Job %s concatenated %d segment(s) into %s", job.id, len(refs), artifact_ref)
        return ConcatenateOutput(
            artifact_ref=artifact_ref,
            segment_ids=[segment.id for segment in segments],
        )


class AddBackgroundMusicStep(WorkflowStep):
    """Mix the job's soundtrack under the concatenated render.

    Jobs without a ``bgm_url`` pass the concatenated render through untouched, so the
    step always completes and export reads a single place.
    """

    kind = StepKind.ADD_BGM

    def describe_input(self, context: StepContext) -> dict[str, Any]:
        concatenated = context.outputs.get(StepKind.CONCATENATE)
        config = context.job.config
        return {
            "job_id": context.job.id,
            "artifact_ref": getattr(concatenated, "artifact_ref", None),
            "bgm_url": config.bgm_url,
            "bgm_volume": config.bgm_volume,
        }

    async def execute(self, context: StepContext) -> BackgroundMusicOutput:
        concatenated = context.require_output(StepKind.CONCATENATE, ConcatenateOutput)
        job = context.job
        music_ref = job.config.bgm_url
        if not music_ref:
            LOGGER.info("Job %s has no background music; keeping %s", job.id, concatenated.artifact_ref)
            return BackgroundMusicOutput(artifact_ref=concatenated.artifact_ref)

        context.abort.raise_if_aborted()
        volume = job.config.bgm_volume
        artifact_ref = await asyncio.wait_for(
            context.services.media.mix_bgm(concatenated.artifact_ref, music_ref, volume),
            timeout=context.services.timeouts.media,
        )
        context.checkpoints.update_state(job.id, final_artifact_ref=artifact_ref)
        LOGGER.info("Job %s mixed background music at %.0f%% into %s", job.id, volume * 100, artifact_ref)
        return BackgroundMusicOutput(artifact_ref=artifact_ref, music_ref=music_ref, volume=volume)


class ExportStep(WorkflowStep):
    """Copy the final render into the output directory when it is a local file.

    Remote artefacts are recorded as-is: ``http(s)`` refs become the public URI, anything
    else the storage URI.
    """

    kind = StepKind.EXPORT

    def describe_input(self, context: StepContext) -> dict[str, Any]:
        rendered = context.outputs.get(StepKind.ADD_BGM) or context.outputs.get(StepKind.CONCATENATE)
        return {
            "job_id": context.job.id,
            "artifact_ref": getattr(rendered, "artifact_ref", None),
            "output_dir": str(context.services.output_dir),
        }

    async def execute(self, context: StepContext) -> ExportOutput:
        job = context.job
        artifact_ref = _final_render_ref(context)
        source = Path(artifact_ref)

        if source.is_file():
            target = context.services.output_dir / f"{job.id}{source.suffix or '.mp4'}"
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, source, target)
            output = ExportOutput(local_path=str(target))
        elif artifact_ref.startswith(PUBLIC_SCHEMES):
            output = ExportOutput(local_path=None, public_uri=artifact_ref)
        else:
            output = ExportOutput(local_path=None, storage_uri=artifact_ref)

        context.checkpoints.update_state(
            job.id,
            final_local_path=output.local_path,
            final_storage_uri=output.storage_uri,
            final_public_uri=output.public_uri,
        )
        LOGGER.info(
            "Job %s exported to %s",
            job.id,
            output.local_path or output.public_uri or output.storage_uri,
        )
        return output


def _final_render_ref(context: StepContext) -> str:
    if StepKind.ADD_BGM in context.outputs:
        return context.require_output(StepKind.ADD_BGM, BackgroundMusicOutput).artifact_ref
    return context.require_output(StepKind.CONCATENATE, ConcatenateOutput).artifact_ref
