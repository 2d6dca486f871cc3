"""
转码任务数据模型

定义清晰度、单档转码结果和转码任务的数据结构与状态管理。
"""

import time
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List


@dataclass(frozen=True)
class Rendition:
    """一个广告的一个清晰度

    创建后不再修改，随广告一起删除。
    """

    ad_id: str
    quality: int
    filepath: str  # 相对于静态根目录的路径，如 /uploads/ads/<id>/<id>-720p.ts
    filesize: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Rendition':
        return cls(
            ad_id=row["ad_id"],
            quality=int(row["quality"]),
            filepath=row["filepath"],
            filesize=int(row["filesize"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ad_id": self.ad_id,
            "quality": self.quality,
            "filepath": self.filepath,
            "filesize": self.filesize,
        }


@dataclass(frozen=True)
class TierResult:
    """单个档位的转码结果，成功时带 rendition，失败时带 error"""

    quality: int
    rendition: Optional[Rendition] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rendition is not None


class JobStatus(Enum):
    """任务状态枚举"""
    QUEUED = "queued"        # 排队中
    RUNNING = "running"      # 运行中
    COMPLETED = "completed"  # 全部档位成功
    PARTIAL = "partial"      # 部分档位成功
    FAILED = "failed"        # 没有任何档位成功，或发生致命错误
    CANCELLED = "cancelled"  # 已取消


@dataclass
class TranscodeJob:
    """转码任务数据模型

    一个任务对应一次完整的清晰度阶梯转码。
    """

    # 基本信息
    job_id: str
    ad_id: str
    source_path: str
    output_dir: str = ""

    # 状态信息
    status: JobStatus = JobStatus.QUEUED
    error: Optional[str] = None
    results: List[TierResult] = field(default_factory=list)

    # 取消信号
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    # 时间戳
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        """初始化后处理"""
        if isinstance(self.status, str):
            self.status = JobStatus(self.status)

    def mark_running(self):
        """标记为运行中"""
        self.status = JobStatus.RUNNING
        self.updated_at = time.time()
        if self.started_at is None:
            self.started_at = time.time()

    def mark_finished(self, results: List[TierResult]):
        """根据各档位结果标记最终状态

        Args:
            results: 按 quality 升序的档位结果
        """
        self.results = list(results)
        succeeded = sum(1 for result in results if result.ok)
        if self.cancel_event.is_set():
            self.status = JobStatus.CANCELLED
            self.error = "cancelled"
        elif succeeded == 0:
            self.status = JobStatus.FAILED
            self.error = "No quality tier was transcoded successfully"
        elif succeeded < len(results):
            self.status = JobStatus.PARTIAL
        else:
            self.status = JobStatus.COMPLETED
        self.updated_at = time.time()
        self.completed_at = time.time()

    def mark_error(self, error: str):
        """标记为错误（致命错误，任务终止）

        Args:
            error: 错误信息
        """
        self.status = JobStatus.FAILED
        self.error = error
        self.updated_at = time.time()
        self.completed_at = time.time()

    def mark_cancelled(self):
        """标记为已取消（排队中被取消的任务）"""
        self.status = JobStatus.CANCELLED
        self.error = "cancelled"
        self.updated_at = time.time()
        self.completed_at = time.time()

    def is_active(self) -> bool:
        """判断任务是否活跃（排队或运行中）"""
        return self.status in (JobStatus.QUEUED, JobStatus.RUNNING)

    @property
    def renditions(self) -> List[Rendition]:
        return [result.rendition for result in self.results if result.ok]

    def get_elapsed_time(self) -> float:
        """获取任务已运行时间（秒）"""
        if self.started_at is None:
            return 0
        end_time = self.completed_at or time.time()
        return end_time - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（用于 API 响应，不包含文件系统路径）"""
        result = {
            "id": self.job_id,
            "ad_id": self.ad_id,
            "status": self.status.value,
            "tiers": [
                {"quality": r.quality, "ok": r.ok, **({"error": r.error} if r.error else {})}
                for r in self.results
            ],
            "qualities": [r.quality for r in self.renditions],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "elapsed": self.get_elapsed_time(),
        }

        if self.started_at:
            result["started_at"] = self.started_at
        if self.completed_at:
            result["completed_at"] = self.completed_at
        if self.error:
            result["error"] = self.error

        return result
