#!/usr/bin/env python3
import logging

from waitress import serve

from qemu_manager.app import create_app
from qemu_manager.config import Config, configure_logging

"""
Quick start
-----------
1) pip install -e .
2) Set environment variables (example):
   export QEMU_IMAGES_DIR="/srv/qemu/images"
   export QEMU_DATABASE_URL="sqlite:////srv/qemu/data/database.sqlite"
   export QEMU_PLATFORM="x86_64"           # guest architecture for new machines
   export QEMU_ACCEL="kvm"                 # optional
   export FLASK_SECRET_KEY="$(python -c 'import os,base64; print(base64.b64encode(os.urandom(24)).decode())')"

3) Run:
   python main.py
   # then open http://HOST:PORT/?q=auth/bootstrap-admin to create the first administrator
"""

logger = logging.getLogger(__name__)


def run():
  config = Config.from_env()
  configure_logging(config.log_level)
  app = create_app(config)
  logger.info(
    f"Starting waitress on http://{config.host}:{config.port} (images: {config.images_dir}, "
    f"platform: {config.platform}, accel: {config.accelerator or 'none'}, log_level={config.log_level})"
  )
  serve(app, host=config.host, port=config.port)


if __name__ == "__main__":
  run()
