"""Common: ログ設定"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s"


def configure_logging(level: str, service: str) -> None:
    """ルートロガーにストリームハンドラを一つだけ設定する。"""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT.format(service=service),
        force=True,
    )
    if level == "DEBUG":
        # aiormq はフレーム単位で DEBUG を出すので抑える
        logging.getLogger("aiormq").setLevel(logging.INFO)
