"""
HLS 播放列表生成器

服务端根据当前存储的清晰度动态生成 m3u8，不持久化播放列表文件。
同样的存储状态总是生成逐字节相同的播放列表。
"""

import math
from typing import Callable, Optional, Sequence

from ..errors import NotFoundError
from .task import Rendition

UriBuilder = Callable[[Rendition], str]


class PlaylistGenerator:
    """HLS 播放列表生成器

    每个清晰度作为一个覆盖整段广告的切片输出，不再细分。
    """

    def build_manifest(
        self,
        duration: float,
        renditions: Sequence[Rendition],
        uri_builder: Optional[UriBuilder] = None,
    ) -> str:
        """生成 VOD 类型的 m3u8 播放列表

        每个条目的时长按 总时长 / 清晰度数 计算，假设各清晰度可播放时长相同。

        Args:
            duration: 广告总时长（秒）
            renditions: 清晰度列表
            uri_builder: 条目 URI 生成函数，默认使用清晰度的存储路径

        Returns:
            m3u8 播放列表内容

        Raises:
            NotFoundError: 没有可用清晰度
        """
        entries = sorted(
            (r for r in renditions if r.quality >= 0),
            key=lambda r: r.quality
        )
        if not entries:
            raise NotFoundError("no playable renditions")

        count = len(entries)
        segment_duration = duration / count

        lines = [
            "#EXTM3U",
            "#EXT-X-VERSION:3",
            f"#EXT-X-TARGETDURATION:{math.ceil(duration / count)}",
            "#EXT-X-MEDIA-SEQUENCE:0",
            "#EXT-X-PLAYLIST-TYPE:VOD",
        ]

        for rendition in entries:
            lines.append(f"#EXTINF:{segment_duration:.6f},")
            lines.append(uri_builder(rendition) if uri_builder else rendition.filepath)

        lines.append("#EXT-X-ENDLIST")
        return "\n".join(lines)


class ManifestService:
    """从清晰度存储读取数据并生成播放列表"""

    def __init__(self, db, store, generator: Optional[PlaylistGenerator] = None):
        """初始化

        Args:
            db: AdDatabase 实例（读取广告时长）
            store: RenditionStore 实例
            generator: 播放列表生成器
        """
        self.db = db
        self.store = store
        self.generator = generator or PlaylistGenerator()

    def build_manifest(self, ad_id: str, uri_builder: Optional[UriBuilder] = None) -> str:
        """生成广告的播放列表

        Raises:
            NotFoundError: 广告不存在或没有文件仍存在的清晰度
        """
        ad = self.db.get_ad(ad_id)
        if not ad:
            raise NotFoundError("ad not found")

        renditions = self.store.find_playable(ad_id)
        return self.generator.build_manifest(float(ad["duration"]), renditions, uri_builder)
