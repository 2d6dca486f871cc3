"""
转码配置模块

定义广告转码相关的配置参数、清晰度阶梯和默认值。
"""

import os
from typing import Tuple, List
from dataclasses import dataclass


@dataclass(frozen=True)
class LadderRung:
    """清晰度阶梯中的一档

    Attributes:
        resolution: 目标分辨率，如 "1280x720"
        bitrate: 目标视频码率，如 "1500k"
        quality: 档位编号，如 720
    """

    resolution: str
    bitrate: str
    quality: int


# 默认清晰度阶梯，按 quality 升序
DEFAULT_LADDER: Tuple[LadderRung, ...] = (
    LadderRung("426x240", "400k", 240),
    LadderRung("854x480", "800k", 480),
    LadderRung("1280x720", "1500k", 720),
    LadderRung("1920x1080", "3000k", 1080),
)


def parse_ladder(raw) -> Tuple[LadderRung, ...]:
    """从配置解析清晰度阶梯

    Args:
        raw: [{"resolution": "426x240", "bitrate": "400k", "quality": 240}, ...]

    Returns:
        按 quality 升序排列的 LadderRung 元组
    """
    rungs = []
    for item in raw or []:
        rungs.append(LadderRung(
            resolution=str(item["resolution"]),
            bitrate=str(item["bitrate"]),
            quality=int(item["quality"]),
        ))
    if not rungs:
        return DEFAULT_LADDER
    qualities = [rung.quality for rung in rungs]
    if len(set(qualities)) != len(qualities):
        raise ValueError("Quality ladder contains duplicate tiers")
    if any(q < 0 for q in qualities):
        raise ValueError("Quality ladder tiers must be non-negative")
    return tuple(sorted(rungs, key=lambda rung: rung.quality))


@dataclass
class TranscodeConfig:
    """转码配置

    从全局配置的 ads 段读取，提供默认值。
    """

    # 目录配置
    static_root: str = "public"  # 对外静态资源根目录，入库路径相对于它
    upload_dir: str = "private/uploads/ads"  # 上传源文件目录（不对外）

    # 清晰度阶梯
    ladder: Tuple[LadderRung, ...] = DEFAULT_LADDER

    # 编码器配置
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    video_encoder: str = "libx264"
    audio_encoder: str = "aac"
    audio_bitrate: str = "128k"
    container: str = "mpegts"
    output_extension: str = "ts"

    # FFmpeg 日志级别
    loglevel: str = "warning"

    # 并发限制
    max_concurrent_jobs: int = 2  # 同时运行的转码任务数
    tier_workers: int = 1  # 单个任务内并行转码的档位数，1 表示顺序执行

    # 超时配置
    tier_timeout: int = 600  # 单个档位超时时间（秒）
    probe_timeout: int = 30  # ffprobe 探测超时时间（秒）

    # 上传限制
    max_upload_mb: int = 500
    keep_source: bool = False  # 转码完成后是否保留源文件

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'TranscodeConfig':
        """从应用配置创建 TranscodeConfig

        Args:
            app_config: 全局配置字典

        Returns:
            TranscodeConfig 实例
        """
        ads_config = app_config.get("ads", {}) or {}
        transcode_config = ads_config.get("transcode", {}) or {}

        config = cls()

        if "static_root" in ads_config:
            config.static_root = ads_config["static_root"]
        if "upload_dir" in ads_config:
            config.upload_dir = ads_config["upload_dir"]
        if "max_upload_mb" in ads_config:
            config.max_upload_mb = int(ads_config["max_upload_mb"] or 500)
        if "keep_source" in ads_config:
            config.keep_source = bool(ads_config["keep_source"])

        if "ladder" in transcode_config:
            config.ladder = parse_ladder(transcode_config["ladder"])

        for key in ("ffmpeg_path", "ffprobe_path", "video_encoder", "audio_encoder",
                    "audio_bitrate", "container", "output_extension", "loglevel"):
            if transcode_config.get(key):
                setattr(config, key, str(transcode_config[key]))

        if "max_concurrent_jobs" in transcode_config:
            config.max_concurrent_jobs = max(1, int(transcode_config["max_concurrent_jobs"] or 2))
        if "tier_workers" in transcode_config:
            config.tier_workers = max(1, int(transcode_config["tier_workers"] or 1))
        if "tier_timeout" in transcode_config:
            config.tier_timeout = int(transcode_config["tier_timeout"] or 600)
        if "probe_timeout" in transcode_config:
            config.probe_timeout = int(transcode_config["probe_timeout"] or 30)

        return config

    @property
    def qualities(self) -> List[int]:
        return [rung.quality for rung in self.ladder]

    def get_output_dir(self, ad_id: str) -> str:
        """获取广告转码输出目录（位于静态根目录下）

        Args:
            ad_id: 广告 ID

        Returns:
            输出目录路径
        """
        return os.path.join(self.static_root, "uploads", "ads", ad_id)

    def get_source_dir(self, ad_id: str) -> str:
        """获取广告源文件目录（不对外）"""
        return os.path.join(self.upload_dir, ad_id)

    def get_rendition_filename(self, ad_id: str, quality: int) -> str:
        """获取清晰度文件名，如 "<ad_id>-720p.ts" """
        return f"{ad_id}-{quality}p.{self.output_extension}"


def get_transcode_config(app_config: dict) -> TranscodeConfig:
    """获取转码配置的便捷函数

    Args:
        app_config: 全局配置字典

    Returns:
        TranscodeConfig 实例
    """
    return TranscodeConfig.from_app_config(app_config)
