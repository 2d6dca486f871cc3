"""
清晰度阶梯转码编排

按清晰度阶梯依次（或在有限线程池中并行）调用编码器：
- 单个档位失败只记录日志并继续下一档，不中断整个任务
- 每个成功档位立即写入清晰度存储，读取方可以看到逐渐增多的清晰度
- 编码器无法启动、存储不可用属于致命错误，直接向上抛出
- 取消信号只停止后续档位，已完成的输出保留
"""

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from ..errors import EncodeFailure, EncoderUnavailable, StoreUnavailable
from .config import TranscodeConfig, LadderRung
from .ffmpeg import Encoder, EncodeOptions
from .store import to_public_path
from .task import Rendition, TierResult

logger = logging.getLogger(__name__)


class TranscodeOrchestrator:
    """清晰度阶梯转码编排器"""

    def __init__(self, encoder: Encoder, config: TranscodeConfig, store=None):
        """初始化编排器

        Args:
            encoder: 编码器
            config: 转码配置
            store: 清晰度存储（RenditionStore），提供时每个成功档位立即入库
        """
        self.encoder = encoder
        self.config = config
        self.store = store

    def encoder_available(self) -> bool:
        """编码器是否可用（编码器未提供检查方法时视为可用）"""
        checker = getattr(self.encoder, "is_available", None)
        return bool(checker()) if callable(checker) else True

    def transcode(
        self,
        source_path: str,
        output_dir: str,
        resource_id: str,
        cancel_event: Optional[threading.Event] = None
    ) -> List[Rendition]:
        """转码并返回成功的清晰度（按 quality 升序，可能为空）"""
        results = self.run_ladder(source_path, output_dir, resource_id, cancel_event)
        return [result.rendition for result in results if result.ok]

    def run_ladder(
        self,
        source_path: str,
        output_dir: str,
        resource_id: str,
        cancel_event: Optional[threading.Event] = None
    ) -> List[TierResult]:
        """执行整个清晰度阶梯

        Args:
            source_path: 源文件路径
            output_dir: 输出目录
            resource_id: 广告 ID
            cancel_event: 取消信号

        Returns:
            每个档位的结果，按 quality 升序
        """
        os.makedirs(output_dir, exist_ok=True)
        ladder = sorted(self.config.ladder, key=lambda rung: rung.quality)

        workers = max(1, int(self.config.tier_workers or 1))
        if workers == 1 or len(ladder) <= 1:
            results = [
                self._run_tier(source_path, output_dir, resource_id, rung, cancel_event)
                for rung in ladder
            ]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"Tier-{resource_id[:8]}") as pool:
                futures = [
                    pool.submit(self._run_tier, source_path, output_dir, resource_id, rung, cancel_event)
                    for rung in ladder
                ]
                # future.result() 会把致命异常重新抛出
                results = [future.result() for future in futures]

        results.sort(key=lambda result: result.quality)
        succeeded = sum(1 for result in results if result.ok)
        logger.info(f"Ladder finished for ad {resource_id}: {succeeded}/{len(results)} tiers succeeded")
        return results

    def _run_tier(
        self,
        source_path: str,
        output_dir: str,
        resource_id: str,
        rung: LadderRung,
        cancel_event: Optional[threading.Event]
    ) -> TierResult:
        """转码单个档位，非致命失败转换成失败结果"""
        if cancel_event is not None and cancel_event.is_set():
            return TierResult(rung.quality, error="cancelled")

        output_path = os.path.join(
            output_dir, self.config.get_rendition_filename(resource_id, rung.quality)
        )
        options = EncodeOptions(
            quality=rung.quality,
            resolution=rung.resolution,
            video_bitrate=rung.bitrate,
            output_path=output_path,
            video_codec=self.config.video_encoder,
            audio_codec=self.config.audio_encoder,
            audio_bitrate=self.config.audio_bitrate,
            container=self.config.container,
            timeout=self.config.tier_timeout,
            cancel_event=cancel_event,
        )

        written_path = None
        try:
            written_path = self.encoder.run(source_path, options)
            rendition = Rendition(
                ad_id=resource_id,
                quality=rung.quality,
                filepath=to_public_path(written_path, self.config.static_root),
                filesize=os.path.getsize(written_path),
            )
        except (EncoderUnavailable, StoreUnavailable):
            raise
        except EncodeFailure as e:
            logger.error(f"Failed to transcode ad {resource_id} to {rung.quality}p: {e.reason}")
            self._discard(written_path or output_path)
            return TierResult(rung.quality, error=e.reason)
        except Exception as e:  # pylint: disable=broad-except
            logger.error(f"Failed to transcode ad {resource_id} to {rung.quality}p: {e}")
            self._discard(written_path or output_path)
            return TierResult(rung.quality, error=type(e).__name__)

        if self.store is not None:
            self.store.create(rendition)

        return TierResult(rung.quality, rendition=rendition)

    def _discard(self, path: str):
        """删除失败档位留下的输出文件"""
        try:
            if os.path.isfile(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to delete partial output for {os.path.basename(path)}: {e}")
