"""
转码任务管理器

负责广告转码任务的生命周期管理：
- 登记上传的广告源（探测时长）
- 在有限大小的线程池中排队执行转码任务（按提交顺序）
- 取消任务、删除广告
"""

import os
import shutil
import uuid
import threading
import logging
from concurrent.futures import ThreadPoolExecutor, Future
from typing import Dict, Optional, List, Any

from ..errors import DeliveryError, NotFoundError
from .config import TranscodeConfig
from .task import TranscodeJob, JobStatus
from .ffmpeg import get_ffmpeg_encoder
from .ffprobe import FFprobeRunner, resolve_duration
from .orchestrator import TranscodeOrchestrator
from .store import RenditionStore

logger = logging.getLogger(__name__)


class TranscodeManager:
    """转码任务管理器"""

    def __init__(
        self,
        config: TranscodeConfig,
        db,
        orchestrator: Optional[TranscodeOrchestrator] = None,
        ffprobe_runner: Optional[FFprobeRunner] = None,
    ):
        """初始化转码管理器

        Args:
            config: 转码配置
            db: AdDatabase 实例
            orchestrator: 转码编排器，默认使用 FFmpeg 编码器
            ffprobe_runner: 时长探测器
        """
        self.config = config
        self.db = db
        if orchestrator is None:
            orchestrator = TranscodeOrchestrator(
                get_ffmpeg_encoder(config), config, RenditionStore(db, config.static_root)
            )
        elif orchestrator.store is None:
            orchestrator.store = RenditionStore(db, config.static_root)
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.ffprobe_runner = ffprobe_runner or FFprobeRunner(config.ffprobe_path)

        self.jobs: Dict[str, TranscodeJob] = {}
        self._futures: Dict[str, Future] = {}
        self.lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_jobs,
            thread_name_prefix="TranscodeJob"
        )

    def stop(self):
        """停止管理器：取消所有活跃任务并等待线程池退出"""
        with self.lock:
            for job in self.jobs.values():
                if job.is_active():
                    job.cancel_event.set()
        self._executor.shutdown(wait=True)

    def register_ad(
        self,
        title: str,
        source_path: str,
        known_duration: Optional[float] = None,
        ad_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """登记广告源

        Args:
            title: 广告标题
            source_path: 源文件路径
            known_duration: 调用方提供的时长（秒），ffprobe 失败时使用
            ad_id: 广告 ID，默认随机生成

        Returns:
            广告记录字典

        Raises:
            ValueError: 无法确定时长
        """
        ad_id = ad_id or uuid.uuid4().hex
        duration = resolve_duration(
            self.ffprobe_runner, source_path, known_duration, timeout=self.config.probe_timeout
        )
        if duration <= 0:
            raise ValueError("Unable to determine video duration")

        return self.db.create_ad(ad_id, title, duration, source_path)

    def submit(self, ad_id: str, source_path: str) -> TranscodeJob:
        """提交转码任务

        超过并发上限的任务按提交顺序排队。

        Args:
            ad_id: 广告 ID
            source_path: 源文件路径

        Returns:
            TranscodeJob 对象
        """
        job = TranscodeJob(
            job_id=f"job_{uuid.uuid4().hex[:16]}",
            ad_id=ad_id,
            source_path=source_path,
            output_dir=self.config.get_output_dir(ad_id),
        )
        with self.lock:
            self.jobs[job.job_id] = job
            self._futures[job.job_id] = self._executor.submit(self._run_job, job)

        logger.info(f"Queued transcode job {job.job_id} for ad {ad_id}")
        return job

    def _run_job(self, job: TranscodeJob):
        """执行转码任务（在线程池中运行）"""
        if job.cancel_event.is_set():
            with self.lock:
                job.mark_cancelled()
            logger.info(f"Job {job.job_id} cancelled before start")
            return

        with self.lock:
            job.mark_running()
        logger.info(f"Starting transcode job {job.job_id} for ad {job.ad_id}")

        try:
            results = self.orchestrator.run_ladder(
                job.source_path, job.output_dir, job.ad_id, job.cancel_event
            )
        except DeliveryError as e:
            # 编码器不可用或存储不可用：终止本任务
            with self.lock:
                job.mark_error(str(e))
            logger.error(f"Job {job.job_id} failed: {e}")
            return
        except Exception as e:  # pylint: disable=broad-except
            with self.lock:
                job.mark_error("internal error")
            logger.exception(f"Unexpected error in job {job.job_id}: {e}")
            return

        with self.lock:
            job.mark_finished(results)
        logger.info(f"Job {job.job_id} finished with status {job.status.value} "
                    f"({len(job.renditions)}/{len(results)} tiers) in {job.get_elapsed_time():.1f}s")

        if not self.config.keep_source and job.status != JobStatus.CANCELLED:
            self._remove_source(job.source_path)

    def _remove_source(self, source_path: str):
        """删除上传的源文件及其空目录"""
        try:
            if os.path.isfile(source_path):
                os.remove(source_path)
            source_dir = os.path.dirname(source_path)
            if source_dir and os.path.isdir(source_dir) and not os.listdir(source_dir):
                os.rmdir(source_dir)
        except OSError as e:
            logger.warning(f"Failed to remove source file: {e}")

    def wait(self, job_id: str, timeout: Optional[float] = None) -> TranscodeJob:
        """等待任务结束

        Raises:
            NotFoundError: 任务不存在
        """
        with self.lock:
            future = self._futures.get(job_id)
            job = self.jobs.get(job_id)
        if job is None or future is None:
            raise NotFoundError("job not found")
        if not future.cancelled():
            future.result(timeout=timeout)
        return job

    def get_job(self, job_id: str) -> Optional[TranscodeJob]:
        """获取任务，不存在返回 None"""
        with self.lock:
            return self.jobs.get(job_id)

    def get_job_info(self, job_id: str) -> Optional[Dict[str, Any]]:
        """获取任务信息快照，不存在返回 None"""
        with self.lock:
            job = self.jobs.get(job_id)
            return job.to_dict() if job else None

    def get_jobs_for_ad(self, ad_id: str) -> List[TranscodeJob]:
        with self.lock:
            return [job for job in self.jobs.values() if job.ad_id == ad_id]

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        """获取所有任务信息"""
        with self.lock:
            return [job.to_dict() for job in self.jobs.values()]

    def cancel(self, job_id: str) -> bool:
        """取消任务

        排队中的任务直接取消；运行中的任务会终止当前编码进程，已完成的档位保留。

        Returns:
            任务是否存在
        """
        with self.lock:
            job = self.jobs.get(job_id)
            future = self._futures.get(job_id)
        if not job:
            return False
        if job.is_active():
            job.cancel_event.set()
            if future is not None and future.cancel():
                job.mark_cancelled()
            logger.info(f"Cancellation requested for job {job_id}")
        return True

    def delete_ad(self, ad_id: str) -> bool:
        """删除广告：取消相关任务，删除清晰度记录、文件和广告记录

        Returns:
            广告是否存在
        """
        ad = self.db.get_ad(ad_id)
        if not ad:
            return False

        for job in self.get_jobs_for_ad(ad_id):
            if not job.is_active():
                continue
            self.cancel(job.job_id)
            future = self._futures.get(job.job_id)
            if future is not None and not future.cancelled():
                try:
                    future.result(timeout=self.config.tier_timeout + 30)
                except Exception as e:  # pylint: disable=broad-except
                    logger.warning(f"Job {job.job_id} did not stop cleanly: {e}")

        removed = self.store.delete_many(ad_id, self.config.get_output_dir(ad_id))
        self.db.delete_ad(ad_id)

        source_dir = self.config.get_source_dir(ad_id)
        if os.path.isdir(source_dir):
            shutil.rmtree(source_dir, ignore_errors=True)

        logger.info(f"Deleted ad {ad_id} ({removed} renditions)")
        return True

    def get_status_summary(self) -> Dict[str, Any]:
        """获取状态摘要"""
        with self.lock:
            counts: Dict[str, int] = {status.value: 0 for status in JobStatus}
            for job in self.jobs.values():
                counts[job.status.value] += 1

            return {
                "total_jobs": len(self.jobs),
                "active_jobs": counts[JobStatus.QUEUED.value] + counts[JobStatus.RUNNING.value],
                "max_concurrent": self.config.max_concurrent_jobs,
                "by_status": counts,
            }


def get_transcode_manager(
    config: TranscodeConfig,
    db,
    orchestrator: Optional[TranscodeOrchestrator] = None
) -> TranscodeManager:
    """获取转码管理器实例

    Args:
        config: 转码配置
        db: AdDatabase 实例
        orchestrator: 转码编排器

    Returns:
        TranscodeManager 实例
    """
    return TranscodeManager(config, db, orchestrator=orchestrator)
