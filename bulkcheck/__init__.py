import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

from config import Config

db = SQLAlchemy()

logger = logging.getLogger(__name__)


def configure_logging(app):
    logging.basicConfig(level=logging.DEBUG if app.debug else logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    log_file_path = app.config.get('LOG_FILE')
    if not log_file_path:
        return
    # Rotate logs: 5 files, 5MB each
    try:
        os.makedirs(os.path.dirname(log_file_path), exist_ok=True)
        file_handler = RotatingFileHandler(log_file_path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding='utf-8')
    except OSError as e:
        logger.error(f"Failed to set up file logging to {log_file_path}: {e}", exc_info=True)
        return
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.DEBUG)
    root = logging.getLogger()
    if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == file_handler.baseFilename
               for h in root.handlers):
        root.addHandler(file_handler)
        logger.info(f"--- File logging initialized to {log_file_path} (Level: DEBUG) ---")
    else:
        file_handler.close()


def create_app(config_class=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    try:
        os.makedirs(app.instance_path, exist_ok=True)
    except OSError:
        pass

    configure_logging(app)
    db.init_app(app)

    from bulkcheck.routes import api_bp
    app.register_blueprint(api_bp, url_prefix='/api')

    with app.app_context():
        from bulkcheck import models  # noqa: F401
        db.create_all()

    logger.info(f"bulkcheck app created with {config_class.__name__}")
    return app
