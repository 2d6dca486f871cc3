#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import sys
import json
import copy
import atexit
import logging
from logging.handlers import TimedRotatingFileHandler

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, jsonify
from flask_cors import CORS

from ad_db import AdDatabase
from modules.transcode.api import register_routes, build_services

logger = logging.getLogger(__name__)

# Configuration file path
CONFIG_FILE = "config/config.json"
DB_FILE = "data/ads.db"

DEFAULT_CONFIG = {
    "database": {
        "file": DB_FILE
    },
    "embed": {
        # 生产环境请通过 EMBED_ENCRYPTION_KEY 环境变量设置
        "secret": ""
    },
    "admin": {
        "token": ""
    },
    "ads": {
        "static_root": "public",
        "upload_dir": "private/uploads/ads",
        "max_upload_mb": 500,
        "keep_source": False,
        "transcode": {
            "ffmpeg_path": "ffmpeg",
            "ffprobe_path": "ffprobe",
            "video_encoder": "libx264",
            "audio_encoder": "aac",
            "audio_bitrate": "128k",
            "loglevel": "warning",
            "max_concurrent_jobs": 2,
            "tier_workers": 1,
            "tier_timeout": 600,
            "probe_timeout": 30,
            "ladder": [
                {"resolution": "426x240", "bitrate": "400k", "quality": 240},
                {"resolution": "854x480", "bitrate": "800k", "quality": 480},
                {"resolution": "1280x720", "bitrate": "1500k", "quality": 720},
                {"resolution": "1920x1080", "bitrate": "3000k", "quality": 1080}
            ]
        }
    }
}


# 创建切片请求相关日志过滤器
class SegmentRequestFilter(logging.Filter):
    """过滤掉切片播放相关的详细日志"""
    def filter(self, record):
        if record.levelno >= logging.WARNING:
            return True
        message = record.getMessage()
        if any(x in message for x in ['Serving segment', 'GET /segment/']):
            return False
        return True


def setup_logging(log_dir='logs'):
    """配置日志：控制台 + 按日期滚动的文件日志"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    # 配置较少日志输出的模块
    for module in ['urllib3', 'werkzeug']:
        logging.getLogger(module).setLevel(logging.WARNING)

    root_logger = logging.getLogger()

    os.makedirs(log_dir, exist_ok=True)

    # 添加按日期滚动的文件处理器
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'webserver.log'),
        when='midnight',
        interval=1,
        backupCount=3  # 保留3天日志
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.INFO)
    root_logger.addHandler(file_handler)

    # 过滤器挂在处理器上，子模块 logger 传播上来的记录也会经过
    segment_filter = SegmentRequestFilter()
    for handler in root_logger.handlers:
        handler.addFilter(segment_filter)


def _merge_config(base, override):
    """递归合并配置，override 中的值覆盖 base"""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge_config(base[key], value)
        else:
            base[key] = value
    return base


# Load configuration
def load_config(config_file=CONFIG_FILE, environ=None):
    """Load configuration file

    配置文件不存在时按默认值创建；环境变量 AD_DB_FILE 覆盖数据库路径。
    EMBED_ENCRYPTION_KEY / APP_ENV 在创建嵌入编解码器时读取。
    """
    environ = os.environ if environ is None else environ
    config = copy.deepcopy(DEFAULT_CONFIG)
    try:
        if os.path.exists(config_file):
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                _merge_config(config, loaded_config)
                logger.info(f"Loaded configuration file: {config_file}")
        else:
            # Create config directory if it doesn't exist
            config_dir = os.path.dirname(config_file)
            if config_dir:
                os.makedirs(config_dir, exist_ok=True)
            # Save default config
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logger.info(f"Created default configuration file: {config_file}")
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load configuration file: {str(e)}")

    db_file = environ.get("AD_DB_FILE", "")
    if db_file:
        config["database"]["file"] = db_file
        logger.info(f"Using database file from environment: {db_file}")

    return config


def create_app(app_config=None, orchestrator=None):
    """创建 Flask 应用并组装投放服务

    Args:
        app_config: 全局配置字典，默认从配置文件加载
        orchestrator: 转码编排器，默认使用 FFmpeg

    Returns:
        Flask 应用实例，投放服务挂在 app.extensions['ad_delivery']
    """
    if app_config is None:
        app_config = load_config()

    app = Flask(__name__, static_folder=None)
    CORS(
        app,
        allow_headers=['Range', 'Content-Type', 'X-Admin-Token'],
        expose_headers=['Content-Length', 'Content-Range', 'Accept-Ranges']
    )

    db_file = app_config.get("database", {}).get("file", DB_FILE)
    db = AdDatabase(db_file=db_file)
    logger.info(f"Using database file: {db_file}")

    services = build_services(app_config, db, orchestrator)
    app.config['MAX_CONTENT_LENGTH'] = (services.config.max_upload_mb + 1) * 1024 * 1024
    app.extensions['ad_delivery'] = services

    register_routes(app, services)

    @app.route('/api/health', methods=['GET'])
    def health():
        """健康检查"""
        return jsonify({
            "success": True,
            "encoder_available": services.manager.orchestrator.encoder_available(),
            "jobs": services.manager.get_status_summary(),
            "dropped_log_entries": services.request_log.dropped if services.request_log else 0,
        })

    return app


def shutdown_services(app):
    """停止转码任务并写完剩余的请求日志"""
    services = app.extensions.get('ad_delivery')
    if not services:
        return
    services.manager.stop()
    if services.request_log:
        services.request_log.stop()
    services.manager.db.close()


# Start the server
if __name__ == '__main__':
    setup_logging()
    app = create_app()
    atexit.register(shutdown_services, app)
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 8080)), debug=False, threaded=True)
