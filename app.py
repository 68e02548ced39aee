# app.py
from flask import Flask
from config.settings import get_config
from extensions.database import db, migrate
from extensions.content_store import content_store
from extensions.logger import init_logger
from utils.response import json_response
from utils.exceptions import BizError
from controllers.attachment_controller import attachment_bp
from controllers.file_serve_controller import file_serve_bp
from commands.attachment_commands import attachments_cli
from services.reconciliation_service import OwnerPayloadRegistry
import models  # noqa: F401  注册模型，供 Flask-Migrate 检测


def create_app(config_name="development", overrides=None):
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    if overrides:
        app.config.update(overrides)

    # 初始化扩展
    db.init_app(app)
    migrate.init_app(app, db)
    init_logger(app)
    content_store.init_app(app)
    # 业务实体在这里注册自己的数据读写函数，供失效引用清理使用
    OwnerPayloadRegistry().init_app(app)
    app.logger.info("Database URI: %s", app.config["SQLALCHEMY_DATABASE_URI"])

    # 附件接口
    app.register_blueprint(attachment_bp)
    # 附件文件访问
    app.register_blueprint(file_serve_bp)
    # flask attachments cleanup / stats
    app.cli.add_command(attachments_cli)

    # 错误处理
    @app.errorhandler(404)
    def not_found(e):
        return json_response(message="接口不存在", code=404)

    @app.errorhandler(500)
    def server_error(e):
        return json_response(message="服务器内部错误", code=500)

    @app.errorhandler(BizError)
    def _biz_err(e: BizError):
        return json_response(code=e.code, message=e.message, data=e.data)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=8888, debug=True)
