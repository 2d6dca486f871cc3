"""
广告转码与投放模块

上传的广告源文件按清晰度阶梯转码成多个 MPEG-TS 文件，
播放端通过加密的嵌入 token 获取动态生成的 m3u8 播放列表。

核心特性：
- 单个清晰度失败不影响其它清晰度（部分成功也可以播放）
- 服务端动态生成 m3u8 播放列表（不持久化播放列表文件）
- 使用 ffprobe 预先获取视频时长
- 有限大小的任务线程池，支持取消
"""

from .config import TranscodeConfig, LadderRung, DEFAULT_LADDER, get_transcode_config
from .task import Rendition, TierResult, TranscodeJob, JobStatus
from .playlist import PlaylistGenerator, ManifestService
from .ffprobe import FFprobeRunner
from .ffmpeg import EncodeOptions, FFmpegRunner, FFmpegEncoder
from .store import RenditionStore
from .orchestrator import TranscodeOrchestrator
from .manager import TranscodeManager, get_transcode_manager

__all__ = [
    'TranscodeConfig',
    'LadderRung',
    'DEFAULT_LADDER',
    'get_transcode_config',
    'Rendition',
    'TierResult',
    'TranscodeJob',
    'JobStatus',
    'PlaylistGenerator',
    'ManifestService',
    'FFprobeRunner',
    'EncodeOptions',
    'FFmpegRunner',
    'FFmpegEncoder',
    'RenditionStore',
    'TranscodeOrchestrator',
    'TranscodeManager',
    'get_transcode_manager',
]
