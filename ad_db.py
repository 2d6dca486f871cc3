import os
import time
import uuid
import sqlite3
import logging
import threading

from modules.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class AdDatabase:
    """广告数据库类，存储广告源信息、转码清晰度、域名访问策略和 API 请求日志

    所有 sqlite3.Error 都会被包装成 StoreUnavailable 抛出，
    由调用方决定是放行（域名检查）还是终止任务（转码）。
    """

    def __init__(self, db_file="data/ads.db"):
        """初始化数据库连接"""
        self.db_path = db_file
        self.local = threading.local()  # 使用线程本地存储
        logger.info("Initializing AdDatabase with database file: %s", self.db_path)
        self.connect()
        self.create_tables()

    def connect(self):
        """连接到数据库，每个线程使用独立的连接"""
        try:
            # 确保数据库目录存在
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

            if not hasattr(self.local, 'conn') or self.local.conn is None:
                self.local.conn = sqlite3.connect(self.db_path)
                self.local.conn.row_factory = sqlite3.Row  # 使查询结果可以通过列名访问
                self.local.conn.execute('PRAGMA foreign_keys = ON')
                self.local.cursor = self.local.conn.cursor()
        except sqlite3.Error as e:
            logger.error("数据库连接错误: %s", e)
            raise StoreUnavailable(f"cannot open database: {e}") from e

    def close(self):
        """关闭数据库连接"""
        if hasattr(self.local, 'conn') and self.local.conn:
            self.local.conn.close()
            self.local.conn = None
            self.local.cursor = None

    def ensure_connection(self):
        """确保当前线程有可用的数据库连接"""
        if not hasattr(self.local, 'conn') or self.local.conn is None:
            self.connect()

    def create_tables(self):
        """创建必要的数据表"""
        self.ensure_connection()
        try:
            # 广告源表
            self.local.cursor.execute('''
            CREATE TABLE IF NOT EXISTS ads (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                duration REAL NOT NULL,
                source_path TEXT,
                created_at INTEGER
            )
            ''')

            # 转码清晰度表（quality < 0 保留给预览文件）
            self.local.cursor.execute('''
            CREATE TABLE IF NOT EXISTS ad_renditions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ad_id TEXT NOT NULL,
                quality INTEGER NOT NULL,
                filepath TEXT NOT NULL,
                filesize INTEGER NOT NULL,
                created_at INTEGER,
                UNIQUE(ad_id, quality),
                FOREIGN KEY (ad_id) REFERENCES ads (id) ON DELETE CASCADE
            )
            ''')

            # 域名访问策略表（仅由外部管理端写入）
            self.local.cursor.execute('''
            CREATE TABLE IF NOT EXISTS domain_access (
                id TEXT PRIMARY KEY,
                domain TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'unknown',
                reason TEXT,
                created_at INTEGER
            )
            ''')

            # API 请求日志表
            self.local.cursor.execute('''
            CREATE TABLE IF NOT EXISTS api_request_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                domain TEXT,
                domain_access_id TEXT,
                endpoint TEXT NOT NULL,
                method TEXT NOT NULL,
                status_code INTEGER,
                response_time INTEGER,
                ip_address TEXT,
                user_agent TEXT,
                referer TEXT,
                blocked INTEGER DEFAULT 0,
                created_at INTEGER
            )
            ''')

            self.local.cursor.execute(
                'CREATE INDEX IF NOT EXISTS idx_renditions_ad ON ad_renditions (ad_id, quality)'
            )
            self.local.conn.commit()
        except sqlite3.Error as e:
            logger.error("创建表错误: %s", e)
            raise StoreUnavailable(f"cannot create tables: {e}") from e

    # ------------------------------------------------------------------
    # 广告源
    # ------------------------------------------------------------------

    def create_ad(self, ad_id, title, duration, source_path=None):
        """保存广告源信息"""
        self.ensure_connection()
        try:
            self.local.cursor.execute('''
            INSERT INTO ads (id, title, duration, source_path, created_at)
            VALUES (?, ?, ?, ?, ?)
            ''', (ad_id, title, float(duration), source_path, int(time.time())))
            self.local.conn.commit()
            return self.get_ad(ad_id)
        except sqlite3.Error as e:
            logger.error("保存广告信息错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    def get_ad(self, ad_id):
        """获取广告源信息，不存在返回 None"""
        self.ensure_connection()
        try:
            self.local.cursor.execute('SELECT * FROM ads WHERE id = ?', (ad_id,))
            row = self.local.cursor.fetchone()
            return dict(row) if row else None
        except sqlite3.Error as e:
            logger.error("获取广告信息错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    def delete_ad(self, ad_id):
        """删除广告（清晰度记录级联删除）

        Returns:
            是否删除了记录
        """
        self.ensure_connection()
        try:
            self.local.cursor.execute('DELETE FROM ads WHERE id = ?', (ad_id,))
            deleted = self.local.cursor.rowcount > 0
            self.local.conn.commit()
            return deleted
        except sqlite3.Error as e:
            logger.error("删除广告错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # 转码清晰度
    # ------------------------------------------------------------------

    def create_rendition(self, rendition):
        """保存一个转码清晰度

        Args:
            rendition: Rendition 对象
        """
        self.ensure_connection()
        try:
            self.local.cursor.execute('''
            INSERT INTO ad_renditions (ad_id, quality, filepath, filesize, created_at)
            VALUES (?, ?, ?, ?, ?)
            ''', (rendition.ad_id, rendition.quality, rendition.filepath,
                  rendition.filesize, int(time.time())))
            self.local.conn.commit()
        except sqlite3.Error as e:
            logger.error("保存清晰度错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    def find_renditions(self, ad_id, min_quality=0):
        """获取广告的清晰度列表，按 quality 升序

        Args:
            ad_id: 广告 ID
            min_quality: 最小 quality（默认 0，排除预览文件）

        Returns:
            字典列表
        """
        self.ensure_connection()
        try:
            self.local.cursor.execute('''
            SELECT ad_id, quality, filepath, filesize FROM ad_renditions
            WHERE ad_id = ? AND quality >= ?
            ORDER BY quality ASC
            ''', (ad_id, min_quality))
            return [dict(row) for row in self.local.cursor.fetchall()]
        except sqlite3.Error as e:
            logger.error("获取清晰度列表错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    def delete_renditions(self, ad_id):
        """删除广告的全部清晰度记录

        Returns:
            删除的记录数
        """
        self.ensure_connection()
        try:
            self.local.cursor.execute('DELETE FROM ad_renditions WHERE ad_id = ?', (ad_id,))
            count = self.local.cursor.rowcount
            self.local.conn.commit()
            return count
        except sqlite3.Error as e:
            logger.error("删除清晰度错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # 域名访问策略
    # ------------------------------------------------------------------

    def find_policy(self, domain):
        """按规范化域名查找访问策略，不存在返回 None"""
        self.ensure_connection()
        try:
            self.local.cursor.execute(
                'SELECT id, domain, status, reason FROM domain_access WHERE domain = ?',
                (domain,)
            )
            row = self.local.cursor.fetchone()
            return dict(row) if row else None
        except sqlite3.Error as e:
            logger.error("查询域名策略错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    def upsert_domain_policy(self, domain, status, reason=None):
        """新增或更新域名策略（供管理端使用，投放链路本身不调用）

        Returns:
            策略记录 ID
        """
        self.ensure_connection()
        try:
            existing = self.find_policy(domain)
            if existing:
                self.local.cursor.execute(
                    'UPDATE domain_access SET status = ?, reason = ? WHERE id = ?',
                    (status, reason, existing['id'])
                )
                record_id = existing['id']
            else:
                record_id = uuid.uuid4().hex
                self.local.cursor.execute('''
                INSERT INTO domain_access (id, domain, status, reason, created_at)
                VALUES (?, ?, ?, ?, ?)
                ''', (record_id, domain, status, reason, int(time.time())))
            self.local.conn.commit()
            return record_id
        except sqlite3.Error as e:
            logger.error("保存域名策略错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # API 请求日志
    # ------------------------------------------------------------------

    def log_api_request(self, entry):
        """写入一条 API 请求日志

        Args:
            entry: 请求日志字典
        """
        self.ensure_connection()
        try:
            self.local.cursor.execute('''
            INSERT INTO api_request_log (
                domain, domain_access_id, endpoint, method, status_code,
                response_time, ip_address, user_agent, referer, blocked, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                entry.get('domain'),
                entry.get('domain_access_id'),
                entry.get('endpoint'),
                entry.get('method'),
                entry.get('status_code'),
                entry.get('response_time'),
                entry.get('ip_address'),
                entry.get('user_agent'),
                entry.get('referer'),
                1 if entry.get('blocked') else 0,
                int(time.time()),
            ))
            self.local.conn.commit()
        except sqlite3.Error as e:
            logger.error("写入请求日志错误: %s", e)
            raise StoreUnavailable(str(e)) from e

    def get_request_logs(self, limit=100):
        """获取最近的请求日志"""
        self.ensure_connection()
        try:
            self.local.cursor.execute(
                'SELECT * FROM api_request_log ORDER BY id DESC LIMIT ?', (limit,)
            )
            return [dict(row) for row in self.local.cursor.fetchall()]
        except sqlite3.Error as e:
            logger.error("获取请求日志错误: %s", e)
            raise StoreUnavailable(str(e)) from e
