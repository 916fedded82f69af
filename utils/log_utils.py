import os
import logging

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'


def get_logger(name):
    """
    按模块名获取 logger：控制台输出 + 可选文件输出（LOG_DIR）
    重复调用不会重复挂 handler
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())
    formatter = logging.Formatter(LOG_FORMAT)

    # 控制台输出
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # 文件输出
    log_dir = os.getenv('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, f"{name}.log"))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
