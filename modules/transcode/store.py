"""
清晰度存储

把数据库中的清晰度记录和静态根目录下的文件放在一起管理：
- 入库路径一律是相对于静态根目录的 URL 风格路径，不包含绝对路径
- 读取时再解析回静态根目录下的实际文件
- 删除广告时同时删除记录和文件
"""

import os
import shutil
import logging
from typing import List, Optional

from ..errors import NotFoundError
from .task import Rendition

logger = logging.getLogger(__name__)


def to_public_path(file_path: str, static_root: str) -> str:
    """把静态根目录下的文件路径转换成对外路径

    例如 /srv/app/public/uploads/ads/x/x-720p.ts -> /uploads/ads/x/x-720p.ts

    Args:
        file_path: 文件路径
        static_root: 静态根目录

    Returns:
        以 / 开头的对外路径

    Raises:
        ValueError: 文件不在静态根目录下
    """
    abs_path = os.path.abspath(file_path)
    abs_root = os.path.abspath(static_root)
    try:
        common = os.path.commonpath([abs_path, abs_root])
    except ValueError:
        common = ""
    if common != abs_root or abs_path == abs_root:
        raise ValueError("output is not under the static root")
    relative = os.path.relpath(abs_path, abs_root)
    return "/" + relative.replace(os.sep, "/")


def resolve_public_path(public_path: str, static_root: str) -> Optional[str]:
    """把对外路径解析回静态根目录下的实际文件路径

    Returns:
        实际路径，路径越界时返回 None
    """
    abs_root = os.path.abspath(static_root)
    candidate = os.path.abspath(os.path.join(abs_root, public_path.lstrip("/")))
    if os.path.commonpath([candidate, abs_root]) != abs_root or candidate == abs_root:
        return None
    return candidate


class RenditionStore:
    """清晰度存储（数据库记录 + 磁盘文件）

    对转码任务来说是只追加的：任务进行中读取方可能看到逐渐增多的清晰度，
    但不会看到减少。
    """

    def __init__(self, db, static_root: str):
        """初始化清晰度存储

        Args:
            db: AdDatabase 实例
            static_root: 静态根目录
        """
        self.db = db
        self.static_root = static_root

    def create(self, rendition: Rendition):
        """写入一个清晰度记录"""
        self.db.create_rendition(rendition)
        logger.info(f"Stored rendition {rendition.quality}p for ad {rendition.ad_id} ({rendition.filesize} bytes)")

    def find_many(self, ad_id: str, min_quality: int = 0) -> List[Rendition]:
        """获取广告的清晰度列表，按 quality 升序

        Args:
            ad_id: 广告 ID
            min_quality: 最小 quality，默认 0（排除预览文件）
        """
        return [Rendition.from_row(row) for row in self.db.find_renditions(ad_id, min_quality)]

    def find_playable(self, ad_id: str) -> List[Rendition]:
        """获取文件仍存在的清晰度，按 quality 升序"""
        playable = []
        for rendition in self.find_many(ad_id, min_quality=0):
            path = resolve_public_path(rendition.filepath, self.static_root)
            if path and os.path.isfile(path):
                playable.append(rendition)
            else:
                logger.warning(f"Skipping rendition {rendition.quality}p for ad {rendition.ad_id}: file missing")
        return playable

    def find_one(self, ad_id: str, quality: int) -> Rendition:
        """获取指定清晰度

        Raises:
            NotFoundError: 清晰度不存在
        """
        for rendition in self.find_many(ad_id, min_quality=quality):
            if rendition.quality == quality:
                return rendition
        raise NotFoundError(f"rendition {quality}p not found")

    def get_file_path(self, rendition: Rendition) -> str:
        """获取清晰度文件的实际路径

        Raises:
            NotFoundError: 文件不存在或路径越界
        """
        path = resolve_public_path(rendition.filepath, self.static_root)
        if not path or not os.path.isfile(path):
            logger.error(f"Rendition file missing for ad {rendition.ad_id} {rendition.quality}p")
            raise NotFoundError("rendition file missing")
        return path

    def delete_many(self, ad_id: str, output_dir: Optional[str] = None) -> int:
        """删除广告的全部清晰度（记录和文件）

        Args:
            ad_id: 广告 ID
            output_dir: 广告输出目录，提供时整个目录一并删除

        Returns:
            删除的记录数
        """
        renditions = self.find_many(ad_id, min_quality=-(2 ** 31))
        for rendition in renditions:
            path = resolve_public_path(rendition.filepath, self.static_root)
            if path and os.path.isfile(path):
                try:
                    os.remove(path)
                except OSError as e:
                    logger.warning(f"Failed to delete file {path}: {e}")

        count = self.db.delete_renditions(ad_id)

        if output_dir and os.path.isdir(output_dir):
            shutil.rmtree(output_dir, ignore_errors=True)

        return count
