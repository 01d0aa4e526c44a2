"""Shrink pipeline state machine.

Stages run strictly in order, each returning a StageResult. A fatal error in
any stage propagates immediately and skips the rest; the working directory and
every mount are released on the way out.

    SANITIZE -> CHECK_INITIAL -> DEFRAGMENT -> CHECK_FINAL -> SHRINK ->
    GEOMETRY -> RESIZE -> RECHECK -> ZERO_FILL -> AUTO_EXPAND -> EXTRACT ->
    COMPRESS

SANITIZE, ZERO_FILL, AUTO_EXPAND and COMPRESS can be switched off. Geometry is
read after the shrink so the plan is never computed from a stale reading.

An existing image in the output directory is never replaced; the run refuses
to start instead.

Cancellation is only honoured between stages. Once RESIZE has completed the
device is modified, and PipelineCancelled says so.
"""
from __future__ import annotations

import shutil
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable, Optional

from rpi_image_shrinker.config.settings import (
    DEFAULT_INIT_RESIZE_PATH,
    DEFAULT_SANITIZE_PATHS,
)
from rpi_image_shrinker.domain import (
    DeviceHandle,
    FilesystemGeometry,
    PartitionGeometry,
    PipelineResult,
    PipelineStage,
    StageResult,
)
from rpi_image_shrinker.logging import operation_context
from rpi_image_shrinker.storage.autoexpand import install_auto_expand
from rpi_image_shrinker.storage.command_runners import REQUIRED_TOOLS, require_tools
from rpi_image_shrinker.storage.compression import archive_path, compress_image
from rpi_image_shrinker.storage.exceptions import OutputExists, PipelineCancelled
from rpi_image_shrinker.storage.filesystem import (
    check_filesystem,
    defragment_filesystem,
    shrink_to_minimum,
)
from rpi_image_shrinker.storage.geometry import (
    build_resize_plan,
    read_filesystem_geometry,
    read_partition_geometry,
)
from rpi_image_shrinker.storage.imaging import extract_image
from rpi_image_shrinker.storage.mount import mounted
from rpi_image_shrinker.storage.partition import recheck_filesystem, resize_partition
from rpi_image_shrinker.storage.sanitize import (
    sanitize_root,
    set_hostname,
    zero_free_space,
)
from rpi_image_shrinker.storage.workspace import working_directory

COMPRESSION_NONE = "none"
COMPRESSION_METHODS = ("xz", "gzip", "zip", COMPRESSION_NONE)

PIPELINE_STAGES = tuple(PipelineStage)

OPTIONAL_STAGES = {
    PipelineStage.SANITIZE,
    PipelineStage.ZERO_FILL,
    PipelineStage.AUTO_EXPAND,
    PipelineStage.COMPRESS,
}


class ShrinkPipeline:
    """Turn an SD card into a minimal image file.

    Args:
        handle: Validated device with boot and root partitions, all unmounted
        output_dir: Directory receiving the final (compressed) image
        image_name: Base file name of the image, without extension
        hostname: New hostname written during sanitizing, if given
        compression: "xz", "gzip", "zip" or "none"
        sanitize: Delete history, logs, caches and temp files first
        zero_fill: Zero free blocks before imaging
        auto_expand: Install first-boot filesystem expansion
        cancel_event: Set by the caller to stop before the next stage
    """

    def __init__(
        self,
        handle: DeviceHandle,
        *,
        output_dir: Path,
        image_name: str,
        hostname: Optional[str] = None,
        compression: str = "xz",
        sanitize: bool = True,
        zero_fill: bool = True,
        auto_expand: bool = True,
        sanitize_paths: Iterable[str] = DEFAULT_SANITIZE_PATHS,
        init_resize_path: str = DEFAULT_INIT_RESIZE_PATH,
        work_dir_parent: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.handle = handle
        self.output_dir = Path(output_dir)
        self.image_name = image_name
        self.hostname = hostname
        if compression not in COMPRESSION_METHODS:
            raise ValueError(f"Unsupported compression method: {compression}")
        self.compression = compression
        self.sanitize = sanitize
        self.sanitize_paths = list(sanitize_paths)
        self.init_resize_path = init_resize_path
        self.work_dir_parent = work_dir_parent
        self.cancel_event = cancel_event or threading.Event()
        self.enabled = {
            PipelineStage.SANITIZE: sanitize or hostname is not None,
            PipelineStage.ZERO_FILL: zero_fill,
            PipelineStage.AUTO_EXPAND: auto_expand,
            PipelineStage.COMPRESS: compression != COMPRESSION_NONE,
        }
        self.result = PipelineResult(handle=handle)
        self.workspace: Optional[Path] = None
        self._fs_geometry: Optional[FilesystemGeometry] = None
        self._part_geometry: Optional[PartitionGeometry] = None
        self._handlers: dict[PipelineStage, Callable[[], StageResult]] = {
            PipelineStage.SANITIZE: self._sanitize,
            PipelineStage.CHECK_INITIAL: self._check_initial,
            PipelineStage.DEFRAGMENT: self._defragment,
            PipelineStage.CHECK_FINAL: self._check_final,
            PipelineStage.SHRINK: self._shrink,
            PipelineStage.GEOMETRY: self._geometry,
            PipelineStage.RESIZE: self._resize,
            PipelineStage.RECHECK: self._recheck,
            PipelineStage.ZERO_FILL: self._zero_fill,
            PipelineStage.AUTO_EXPAND: self._auto_expand,
            PipelineStage.EXTRACT: self._extract,
            PipelineStage.COMPRESS: self._compress,
        }

    @property
    def stages(self) -> list[PipelineStage]:
        return [
            stage
            for stage in PIPELINE_STAGES
            if stage not in OPTIONAL_STAGES or self.enabled[stage]
        ]

    def required_tools(self) -> list[str]:
        tools = list(REQUIRED_TOOLS)
        if self.enabled[PipelineStage.COMPRESS]:
            tools.append(self.compression)
        return tools

    @property
    def output_path(self) -> Path:
        """Where the finished image will be published."""
        image = self.output_dir / f"{self.image_name}.img"
        if not self.enabled[PipelineStage.COMPRESS]:
            return image
        return archive_path(image, self.compression)

    def run(self) -> PipelineResult:
        if self.output_path.exists():
            raise OutputExists(str(self.output_path))
        require_tools(self.required_tools())
        with operation_context("pipeline", device=self.handle.path) as log:
            with working_directory(self.work_dir_parent) as workspace:
                self.workspace = workspace
                for stage in self.stages:
                    self._check_cancelled(stage)
                    log.info(f"Stage: {stage.label}")
                    stage_result = self._handlers[stage]()
                    self.result.stages.append(stage_result)
                    if not stage_result.ok:
                        log.warning(
                            f"Stage {stage.label} skipped: {stage_result.detail}"
                        )
        return self.result

    def _check_cancelled(self, next_stage: PipelineStage) -> None:
        if not self.cancel_event.is_set():
            return
        device_modified = PipelineStage.RESIZE in self.result.completed_stages
        raise PipelineCancelled(next_stage.label, device_modified)

    def _mount_dir(self, name: str) -> Path:
        assert self.workspace is not None
        return self.workspace / name

    # Stage handlers

    def _sanitize(self) -> StageResult:
        with mounted(self.handle.root_partition, self._mount_dir("root")) as root_dir:
            removed = 0
            if self.sanitize:
                removed = sanitize_root(root_dir, self.sanitize_paths)
            if self.hostname is not None:
                set_hostname(root_dir, self.hostname)
        return StageResult(PipelineStage.SANITIZE, detail=f"removed {removed} entries")

    def _check_initial(self) -> StageResult:
        clean = check_filesystem(self.handle.root_partition, mandatory=False)
        return StageResult(
            PipelineStage.CHECK_INITIAL,
            detail="consistent" if clean else "check failed, continuing",
        )

    def _defragment(self) -> StageResult:
        assert self.workspace is not None
        defragment_filesystem(self.handle.root_partition, self.workspace)
        return StageResult(PipelineStage.DEFRAGMENT)

    def _check_final(self) -> StageResult:
        check_filesystem(self.handle.root_partition, mandatory=True)
        return StageResult(PipelineStage.CHECK_FINAL, detail="consistent")

    def _shrink(self) -> StageResult:
        shrink_to_minimum(self.handle.root_partition)
        return StageResult(PipelineStage.SHRINK)

    def _geometry(self) -> StageResult:
        self._fs_geometry = read_filesystem_geometry(self.handle.root_partition)
        self._part_geometry = read_partition_geometry(self.handle)
        self.result.plan = build_resize_plan(self._fs_geometry, self._part_geometry)
        return StageResult(
            PipelineStage.GEOMETRY, detail=f"end sector {self.result.plan.end_sector}"
        )

    def _resize(self) -> StageResult:
        assert self.result.plan is not None
        resize_partition(self.handle, self.result.plan)
        return StageResult(PipelineStage.RESIZE)

    def _recheck(self) -> StageResult:
        recheck_filesystem(self.handle)
        return StageResult(PipelineStage.RECHECK, detail="consistent")

    def _zero_fill(self) -> StageResult:
        zeroed = zero_free_space(self.handle.root_partition)
        return StageResult(
            PipelineStage.ZERO_FILL,
            ok=zeroed,
            detail="" if zeroed else "zerofree unavailable",
        )

    def _auto_expand(self) -> StageResult:
        with mounted(self.handle.root_partition, self._mount_dir("root")) as root_dir:
            with mounted(self.handle.boot_partition, self._mount_dir("boot")) as boot_dir:
                installed = install_auto_expand(
                    boot_dir, root_dir, self.init_resize_path
                )
        return StageResult(
            PipelineStage.AUTO_EXPAND,
            ok=installed,
            detail="" if installed else "resize helper or cmdline.txt missing",
        )

    def _extract(self) -> StageResult:
        assert self.workspace is not None and self.result.plan is not None
        image_path = self.workspace / f"{self.image_name}.img"
        self.result.image = extract_image(self.handle.path, self.result.plan, image_path)
        if not self.enabled[PipelineStage.COMPRESS]:
            self.result.archive_path = self._publish(image_path)
            self.result.image = replace(self.result.image, path=self.result.archive_path)
        return StageResult(
            PipelineStage.EXTRACT, detail=f"{self.result.image.size_bytes} bytes"
        )

    def _compress(self) -> StageResult:
        assert self.result.image is not None
        archive = compress_image(self.result.image.path, self.compression)
        self.result.archive_path = self._publish(archive)
        return StageResult(PipelineStage.COMPRESS, detail=str(self.result.archive_path))

    def _publish(self, path: Path) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        destination = self.output_dir / path.name
        if destination.exists():
            raise OutputExists(str(destination))
        shutil.move(str(path), str(destination))
        return destination
