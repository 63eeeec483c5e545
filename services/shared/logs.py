"""全サービス共通のロギング設定。"""

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s"


def configure_logging(service_name: str, level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT.format(service=service_name),
    )
