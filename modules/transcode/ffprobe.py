"""
FFprobe 媒体信息获取模块

上传的广告源文件在转码前先用 ffprobe 取得总时长，
这个时长是后续生成播放列表时计算切片时长的唯一依据。
"""

import json
import subprocess
import logging
from typing import Dict, Any, Tuple, Optional

logger = logging.getLogger(__name__)


class FFprobeRunner:
    """FFprobe 运行器

    使用 ffprobe 获取本地源文件的媒体信息。
    """

    def __init__(self, ffprobe_path: str = "ffprobe"):
        """初始化 FFprobe 运行器

        Args:
            ffprobe_path: ffprobe 可执行文件路径
        """
        self.ffprobe_path = ffprobe_path

    def get_media_info(
        self,
        source_path: str,
        timeout: int = 30
    ) -> Tuple[bool, Dict[str, Any], Optional[str]]:
        """获取媒体信息

        Args:
            source_path: 源文件路径
            timeout: 超时时间（秒）

        Returns:
            (成功标志, 媒体信息字典, 错误信息)
        """
        cmd = [
            self.ffprobe_path,
            "-hide_banner",
            "-loglevel", "error",
            "-show_format",
            "-show_streams",
            "-print_format", "json",
            source_path
        ]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            logger.error(f"ffprobe timeout after {timeout}s")
            return False, {}, f"ffprobe timeout ({timeout}s)"
        except FileNotFoundError:
            logger.error("ffprobe executable not found")
            return False, {}, "ffprobe not found"
        except OSError as e:
            logger.error(f"Error running ffprobe: {e}")
            return False, {}, str(e)

        if result.returncode != 0:
            error_msg = result.stderr.strip() or "Unknown ffprobe error"
            logger.warning(f"ffprobe error (code {result.returncode}): {error_msg}")
            return False, {}, f"ffprobe failed: {error_msg}"

        try:
            media_info = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse ffprobe output: {e}, stdout: {result.stdout[:200]}")
            return False, {}, f"Failed to parse ffprobe output: {e}"

        parsed_info = self._parse_media_info(media_info)
        logger.info(f"ffprobe got duration {parsed_info['duration']}s, format {parsed_info['format'] or 'unknown'}, "
                    f"video {parsed_info['video_codec'] or 'none'}, audio {parsed_info['audio_codec'] or 'none'}")
        return True, parsed_info, None

    def _parse_media_info(self, raw_info: Dict[str, Any]) -> Dict[str, Any]:
        """解析 ffprobe 输出的原始信息

        Args:
            raw_info: ffprobe 原始输出

        Returns:
            时长、容器格式和首个音视频流的编码
        """
        result = {
            "duration": 0.0,
            "format": "",
            "video_codec": "",
            "audio_codec": "",
        }

        format_info = raw_info.get("format", {})
        result["format"] = format_info.get("format_name", "")

        # 获取时长（秒）
        try:
            result["duration"] = float(format_info.get("duration", "0"))
        except (ValueError, TypeError):
            result["duration"] = 0.0

        for stream in raw_info.get("streams", []):
            codec_type = stream.get("codec_type", "")
            if codec_type == "video" and not result["video_codec"]:
                result["video_codec"] = stream.get("codec_name", "")
            elif codec_type == "audio" and not result["audio_codec"]:
                result["audio_codec"] = stream.get("codec_name", "")

        return result

    def get_duration(
        self,
        source_path: str,
        timeout: int = 30
    ) -> Tuple[bool, float, Optional[str]]:
        """快捷获取视频时长

        Args:
            source_path: 源文件路径
            timeout: 超时时间（秒）

        Returns:
            (成功标志, 时长秒数, 错误信息)
        """
        success, media_info, error = self.get_media_info(source_path, timeout)
        if success and media_info.get("duration", 0.0) > 0:
            return True, media_info["duration"], None
        return False, 0.0, error or "duration unavailable"


def resolve_duration(
    runner: FFprobeRunner,
    source_path: str,
    known_duration: Optional[float] = None,
    timeout: int = 30
) -> float:
    """确定源文件时长：优先 ffprobe，失败时使用调用方提供的时长

    Returns:
        时长（秒），两者都不可用时返回 0.0
    """
    success, duration, error = runner.get_duration(source_path, timeout=timeout)
    if success:
        return duration

    logger.warning(f"Failed to probe duration: {error}")
    if known_duration and known_duration > 0:
        logger.info(f"Using caller supplied duration: {known_duration}s")
        return float(known_duration)
    return 0.0
