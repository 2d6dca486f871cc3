"""
FFmpeg 进程管理模块

负责构建 FFmpeg 转码命令并执行单个清晰度档位的转码。
编排器只依赖 Encoder 接口，测试中可以换成不启动进程的假编码器。
"""

import os
import time
import subprocess
import threading
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from ..errors import EncodeFailure, EncoderUnavailable
from .config import TranscodeConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodeOptions:
    """单次编码参数"""

    quality: int
    resolution: str
    video_bitrate: str
    output_path: str
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    container: str = "mpegts"
    timeout: Optional[float] = None
    cancel_event: Optional[threading.Event] = None


class Encoder(Protocol):
    """编码器接口"""

    def run(self, input_path: str, options: EncodeOptions) -> str:
        """执行编码，返回输出文件路径

        Raises:
            EncodeFailure: 本档位编码失败（非零退出、超时、被取消、无输出）
            EncoderUnavailable: 编码器无法启动
        """


class FFmpegRunner:
    """FFmpeg 命令构建器

    构建单档位输出 MPEG-TS 的 FFmpeg 命令。
    """

    def __init__(self, config: TranscodeConfig, ffmpeg_path: Optional[str] = None):
        """初始化 FFmpeg 运行器

        Args:
            config: 转码配置
            ffmpeg_path: ffmpeg 可执行文件路径，默认取配置
        """
        self.config = config
        self.ffmpeg_path = ffmpeg_path or config.ffmpeg_path

    def build_command(self, input_path: str, options: EncodeOptions) -> List[str]:
        """构建 FFmpeg 命令

        Args:
            input_path: 源文件路径
            options: 编码参数

        Returns:
            FFmpeg 命令列表
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", self.config.loglevel,
            "-i", input_path,
        ]

        # 视频编码
        cmd.extend(["-c:v", options.video_codec])
        cmd.extend(["-s", options.resolution])
        cmd.extend(["-b:v", options.video_bitrate])

        # 音频编码
        cmd.extend(["-c:a", options.audio_codec])
        cmd.extend(["-b:a", options.audio_bitrate])

        # 输出参数
        cmd.extend([
            "-map_metadata", "-1",  # 去除全局元数据
            "-map_chapters", "-1",   # 去除章节
        ])

        cmd.extend(self._get_container_params(options))

        cmd.extend(["-y", options.output_path])
        return cmd

    def _get_container_params(self, options: EncodeOptions) -> List[str]:
        """获取封装参数

        清零复用延迟和时间戳偏移，保证各切片之间没有时间戳漂移。
        """
        return [
            "-f", options.container,
            "-muxdelay", "0",
            "-muxpreload", "0",
            "-output_ts_offset", "0",
        ]

    def get_command_line_string(self, command: List[str]) -> str:
        """获取命令行字符串（用于日志记录）"""
        return " ".join(command)


class FFmpegEncoder:
    """基于 FFmpeg 子进程的编码器"""

    POLL_INTERVAL = 0.2

    def __init__(self, config: TranscodeConfig, runner: Optional[FFmpegRunner] = None):
        self.config = config
        self.runner = runner or FFmpegRunner(config)

    def is_available(self) -> bool:
        """检查 ffmpeg 是否可用"""
        try:
            result = subprocess.run(
                [self.runner.ffmpeg_path, "-version"],
                capture_output=True,
                timeout=10
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired):
            return False

    def run(self, input_path: str, options: EncodeOptions) -> str:
        """执行单档位转码

        阻塞直到进程退出、超时或被取消。

        Args:
            input_path: 源文件路径
            options: 编码参数

        Returns:
            输出文件路径
        """
        command = self.runner.build_command(input_path, options)
        logger.info(f"Starting FFmpeg for {options.quality}p: {self.runner.get_command_line_string(command)}")

        log_path = f"{options.output_path}.log"
        try:
            with open(log_path, "w") as log_file:
                try:
                    process = subprocess.Popen(
                        command,
                        stdout=subprocess.DEVNULL,
                        stderr=log_file,
                        stdin=subprocess.DEVNULL
                    )
                except OSError as e:
                    raise EncoderUnavailable(f"Failed to start FFmpeg: {e}") from e

                return_code = self._wait(process, options)

            if return_code != 0:
                logger.warning(f"FFmpeg {options.quality}p stderr tail: {self._read_tail(log_path)}")
        finally:
            self._remove_quietly(log_path)

        if return_code != 0:
            self._remove_quietly(options.output_path)
            raise EncodeFailure(options.quality, f"FFmpeg exited with code {return_code}")

        if not os.path.exists(options.output_path) or os.path.getsize(options.output_path) == 0:
            self._remove_quietly(options.output_path)
            raise EncodeFailure(options.quality, "FFmpeg produced no output")

        return options.output_path

    def _wait(self, process: subprocess.Popen, options: EncodeOptions) -> int:
        """等待进程结束，处理超时和取消"""
        deadline = time.monotonic() + options.timeout if options.timeout else None

        while True:
            return_code = process.poll()
            if return_code is not None:
                return return_code

            if options.cancel_event is not None and options.cancel_event.is_set():
                self._stop_process(process, "cancelled")
                self._remove_quietly(options.output_path)
                raise EncodeFailure(options.quality, "cancelled")

            if deadline is not None and time.monotonic() > deadline:
                self._stop_process(process, "timeout")
                self._remove_quietly(options.output_path)
                raise EncodeFailure(options.quality, f"timed out after {options.timeout}s")

            if options.cancel_event is not None:
                options.cancel_event.wait(self.POLL_INTERVAL)
            else:
                time.sleep(self.POLL_INTERVAL)

    def _stop_process(self, process: subprocess.Popen, reason: str):
        """停止 FFmpeg 进程"""
        try:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            logger.info(f"Stopped FFmpeg process {process.pid} ({reason})")
        except OSError as e:
            logger.error(f"Error stopping FFmpeg process: {e}")

    def _read_tail(self, path: str, max_chars: int = 500) -> str:
        try:
            with open(path, "r", errors="replace") as f:
                return f.read()[-max_chars:].strip()
        except OSError:
            return ""

    def _remove_quietly(self, path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to delete file {path}: {e}")


def get_ffmpeg_encoder(config: TranscodeConfig) -> FFmpegEncoder:
    """获取 FFmpeg 编码器实例

    Args:
        config: 转码配置

    Returns:
        FFmpegEncoder 实例
    """
    return FFmpegEncoder(config)
