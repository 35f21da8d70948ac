# deploykit/core/logging.py
import os
import threading
from datetime import datetime

LOG_DIR = "logs"

_lock = threading.Lock()


def log(channel: str, msg: str):
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    line = f"[{ts}] [{channel}] {msg}"
    print(line, flush=True)

    # Also append to logs/{channel}.log
    try:
        with _lock:
            os.makedirs(LOG_DIR, exist_ok=True)
            with open(os.path.join(LOG_DIR, f"{channel}.log"), "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError:
        pass


def task_channel(task_id: int) -> str:
    return f"deploy-{task_id}"
