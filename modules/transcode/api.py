"""
广告投放 API 端点

播放端只拿到加密后的嵌入 token：
- 播放列表由服务端根据当前已存储的清晰度动态生成
- 每个清晰度作为一个切片，通过 token + quality 访问
- 每次请求都会经过域名访问控制，并异步写入请求日志

另外提供上传、任务查询、取消、删除等运维接口。
"""

import os
import time
import shutil
import uuid
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from flask import jsonify, request, send_file, Response
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from ..errors import AccessDenied, DecodeError, DeliveryError, NotFoundError, StoreUnavailable
from ..embed_crypto import EmbedCodec, get_embed_codec, to_url_token
from ..domain_access import DomainAccessGate, RequestLogWriter, AccessDecision
from .config import TranscodeConfig, get_transcode_config
from .manager import TranscodeManager, get_transcode_manager
from .playlist import ManifestService
from .store import RenditionStore

logger = logging.getLogger(__name__)

MANIFEST_MIMETYPE = 'application/vnd.apple.mpegurl'
SEGMENT_MIMETYPE = 'video/mp2t'

# 允许上传的文件扩展名，内容另外按文件头校验
ALLOWED_EXTENSIONS = {'mp4', 'm4v', 'mov', 'webm', 'ogg', 'ogv'}


@dataclass
class DeliveryServices:
    """投放链路依赖的服务集合（在 webserver.py 中组装）"""
    codec: EmbedCodec
    gate: DomainAccessGate
    manifests: ManifestService
    store: RenditionStore
    manager: TranscodeManager
    config: TranscodeConfig
    request_log: Optional[RequestLogWriter] = None
    admin_token: Optional[str] = None


def detect_container(header: bytes) -> Optional[str]:
    """根据文件头识别容器格式

    Args:
        header: 文件开头至少 12 个字节

    Returns:
        'mp4' / 'webm' / 'ogg'，无法识别返回 None
    """
    if len(header) >= 12 and header[4:8] == b'ftyp':
        return 'mp4'
    if header.startswith(b'\x1a\x45\xdf\xa3'):
        return 'webm'
    if header.startswith(b'OggS'):
        return 'ogg'
    return None


def build_segment_uri(token: str, quality: int) -> str:
    return f"/segment/{token}/{quality}"


def build_manifest_url(token: str) -> str:
    return f"/manifest/{token}.m3u8"


def register_error_handlers(app):
    """注册统一的异常处理，响应体不包含路径、密钥或原始 ID"""

    @app.errorhandler(DecodeError)
    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return "Not found", 404

    @app.errorhandler(AccessDenied)
    def handle_access_denied(e):
        return "Forbidden", 403

    @app.errorhandler(StoreUnavailable)
    def handle_store_unavailable(e):
        logger.error(f"Store unavailable: {e}")
        return "Service unavailable", 503

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Unhandled error on {request.path}: {type(e).__name__}")
        return "Internal server error", 500


def register_routes(app, services: DeliveryServices):
    """注册广告投放 API 路由

    Args:
        app: Flask 应用实例
        services: DeliveryServices 实例
    """
    register_error_handlers(app)

    def _check_access() -> AccessDecision:
        return services.gate.check_access(
            request.headers.get('Referer'),
            request.headers.get('Origin')
        )

    def _log_request(decision: Optional[AccessDecision], status_code: int, started: float):
        """异步写入请求日志，不阻塞响应"""
        if services.request_log is None:
            return
        services.request_log.submit({
            'domain': decision.domain if decision else None,
            'domain_access_id': decision.record_id if decision else None,
            'endpoint': request.url_rule.rule if request.url_rule else request.path,
            'method': request.method,
            'status_code': status_code,
            'response_time': int((time.time() - started) * 1000),
            'ip_address': request.headers.get('X-Forwarded-For', request.remote_addr),
            'user_agent': request.headers.get('User-Agent'),
            'referer': request.headers.get('Referer'),
            'blocked': bool(decision is not None and not decision.allowed),
        })

    def _gated(token, handler):
        """解码 token 并执行域名访问控制，然后调用 handler(ad_id)"""
        started = time.time()
        decision = None
        status_code = 500
        try:
            ad_id = services.codec.decode_or_raise(token)
            decision = _check_access()
            if not decision.allowed:
                logger.warning(f"Blocked request from domain {decision.domain}: {decision.reason}")
                raise AccessDenied(decision.reason, decision.record_id)
            response = handler(ad_id)
            status_code = response.status_code
            return response
        except (DecodeError, NotFoundError):
            status_code = 404
            raise
        except AccessDenied:
            status_code = 403
            raise
        except StoreUnavailable:
            status_code = 503
            raise
        finally:
            _log_request(decision, status_code, started)

    def _require_admin():
        """校验运维接口的 X-Admin-Token，未配置 token 时不校验"""
        if not services.admin_token:
            return None
        if request.headers.get('X-Admin-Token') != services.admin_token:
            return jsonify({"error": "Unauthorized"}), 401
        return None

    @app.route('/manifest/<token>.m3u8', methods=['GET'])
    @app.route('/manifest/<token>', methods=['GET'])
    def ad_manifest(token):
        """获取广告的 m3u8 播放列表

        播放列表中的切片地址复用请求中的 token，不暴露内部 ID。

        Args:
            token: 嵌入 token

        Returns:
            m3u8 播放列表内容
        """
        if token.endswith(".m3u8"):
            token = token[:-len(".m3u8")]

        def render(ad_id):
            playlist = services.manifests.build_manifest(
                ad_id, uri_builder=lambda rendition: build_segment_uri(token, rendition.quality)
            )
            response = Response(playlist, mimetype=MANIFEST_MIMETYPE)
            response.headers['Cache-Control'] = 'no-cache'
            return response

        return _gated(token, render)

    @app.route('/segment/<token>/<int:quality>', methods=['GET'])
    def ad_segment(token, quality):
        """获取指定清晰度的切片文件

        Range 请求由 Werkzeug 处理。

        Args:
            token: 嵌入 token
            quality: 清晰度（如 480）

        Returns:
            切片文件内容
        """
        def serve(ad_id):
            rendition = services.store.find_one(ad_id, quality)
            file_path = services.store.get_file_path(rendition)
            logger.info(f"Serving segment {quality}p for ad {ad_id}")
            response = send_file(file_path, mimetype=SEGMENT_MIMETYPE, conditional=True)
            response.headers['Cache-Control'] = 'public, max-age=3600'
            return response

        return _gated(token, serve)

    @app.route('/api/ads/upload', methods=['POST'])
    def ad_upload():
        """上传广告源文件并提交转码任务

        表单字段：
            file: 视频文件（mp4 / webm / ogg）
            title: 广告标题
            duration: 可选，ffprobe 失败时使用的时长（秒）

        Returns:
            202 和广告 ID、任务 ID、嵌入 token
        """
        denied = _require_admin()
        if denied:
            return denied

        upload = request.files.get('file')
        if upload is None or not upload.filename:
            return jsonify({"error": "No file uploaded"}), 400

        filename = secure_filename(upload.filename)
        ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
        if ext not in ALLOWED_EXTENSIONS:
            return jsonify({"error": "Unsupported file type"}), 400

        header = upload.stream.read(16)
        upload.stream.seek(0)
        if detect_container(header) is None:
            return jsonify({"error": "File content is not a supported video"}), 400

        known_duration = None
        if request.form.get('duration'):
            try:
                known_duration = float(request.form['duration'])
            except ValueError:
                return jsonify({"error": "Invalid duration"}), 400

        config = services.config
        ad_id = uuid.uuid4().hex
        source_dir = config.get_source_dir(ad_id)
        os.makedirs(source_dir, exist_ok=True)
        source_path = os.path.join(source_dir, f"source.{ext}")
        upload.save(source_path)

        if os.path.getsize(source_path) > config.max_upload_mb * 1024 * 1024:
            shutil.rmtree(source_dir, ignore_errors=True)
            return jsonify({"error": f"File exceeds {config.max_upload_mb} MB limit"}), 413

        title = (request.form.get('title') or '').strip() or os.path.splitext(filename)[0]
        try:
            services.manager.register_ad(title, source_path, known_duration, ad_id=ad_id)
        except ValueError as e:
            shutil.rmtree(source_dir, ignore_errors=True)
            return jsonify({"error": str(e)}), 400
        except DeliveryError:
            shutil.rmtree(source_dir, ignore_errors=True)
            raise

        job = services.manager.submit(ad_id, source_path)
        token = to_url_token(services.codec.encode(ad_id))
        logger.info(f"Accepted upload for ad {ad_id} as job {job.job_id}")

        return jsonify({
            "success": True,
            "ad_id": ad_id,
            "job_id": job.job_id,
            "embed_token": token,
            "manifest_url": build_manifest_url(token),
        }), 202

    @app.route('/api/ads/jobs/<job_id>', methods=['GET'])
    def ad_job_status(job_id):
        """获取转码任务状态"""
        denied = _require_admin()
        if denied:
            return denied

        info = services.manager.get_job_info(job_id)
        if not info:
            return jsonify({"error": "Job not found"}), 404

        return jsonify({
            "success": True,
            "job": info,
            "status": info["status"],
        })

    @app.route('/api/ads/jobs/<job_id>/cancel', methods=['POST'])
    def ad_job_cancel(job_id):
        """取消转码任务，已完成的清晰度保留"""
        denied = _require_admin()
        if denied:
            return denied

        if not services.manager.cancel(job_id):
            return jsonify({"error": "Job not found"}), 404

        return jsonify({
            "success": True,
            "message": "Cancellation requested",
            "job": services.manager.get_job_info(job_id),
        })

    @app.route('/api/ads/jobs', methods=['GET'])
    def ad_jobs():
        """获取所有转码任务"""
        denied = _require_admin()
        if denied:
            return denied

        return jsonify({
            "success": True,
            "jobs": services.manager.get_all_jobs(),
            "summary": services.manager.get_status_summary(),
        })

    @app.route('/api/ads/<ad_id>/embed', methods=['GET'])
    def ad_embed(ad_id):
        """为广告生成新的嵌入 token 和播放列表地址"""
        denied = _require_admin()
        if denied:
            return denied

        if not services.manager.db.get_ad(ad_id):
            return jsonify({"error": "Ad not found"}), 404

        token = to_url_token(services.codec.encode(ad_id))
        qualities = [r.quality for r in services.store.find_playable(ad_id)]
        return jsonify({
            "success": True,
            "embed_token": token,
            "manifest_url": build_manifest_url(token),
            "qualities": qualities,
        })

    @app.route('/api/ads/<ad_id>/delete', methods=['POST'])
    def ad_delete(ad_id):
        """删除广告及其所有清晰度文件"""
        denied = _require_admin()
        if denied:
            return denied

        if not services.manager.delete_ad(ad_id):
            return jsonify({"error": "Ad not found"}), 404

        return jsonify({"success": True, "message": "Ad deleted"})


def build_services(app_config: Dict[str, Any], db, orchestrator=None) -> DeliveryServices:
    """根据全局配置组装投放服务

    Args:
        app_config: 全局配置字典
        db: AdDatabase 实例
        orchestrator: 转码编排器，默认使用 FFmpeg

    Returns:
        DeliveryServices 实例

    Raises:
        ConfigurationError: 生产环境未配置嵌入密钥
    """
    codec = get_embed_codec(app_config)
    config = get_transcode_config(app_config)
    manager = get_transcode_manager(config, db, orchestrator)
    request_log = RequestLogWriter(db)
    request_log.start()

    admin_section = app_config.get('admin', {}) or {}
    admin_token = str(admin_section.get('token') or '').strip() or None

    return DeliveryServices(
        codec=codec,
        gate=DomainAccessGate(db),
        manifests=ManifestService(db, manager.store),
        store=manager.store,
        manager=manager,
        config=config,
        request_log=request_log,
        admin_token=admin_token,
    )
