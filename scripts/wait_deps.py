import json
import os
import socket
import time
import urllib.request

TIMEOUT = int(os.getenv("TIMEOUT_S", "120"))
BLOB_BACKEND = os.getenv("BLOB_BACKEND", "local")
MINIO_URL = os.getenv("MINIO_URL", "http://minio:9000")
REDIS_HOST = os.getenv("REDIS_HOST", "redis")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "postgres")
POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))


def http_ok(url: str) -> bool:
    try:
        with urllib.request.urlopen(url, timeout=2) as r:
            return 200 <= r.status < 500
    except Exception:
        return False


def tcp_ok(host: str, port: int) -> bool:
    try:
        s = socket.create_connection((host, port), timeout=2)
        s.close()
        return True
    except Exception:
        return False


def check() -> dict:
    status = {
        "postgres": tcp_ok(POSTGRES_HOST, POSTGRES_PORT),
        "redis": tcp_ok(REDIS_HOST, REDIS_PORT),
    }
    if BLOB_BACKEND == "minio":
        status["minio"] = http_ok(MINIO_URL.rstrip("/") + "/minio/health/live")
    return status


def main() -> int:
    deadline = time.time() + TIMEOUT
    status = check()
    while time.time() < deadline:
        if all(status.values()):
            print(json.dumps({"ready": True, **status}))
            return 0
        time.sleep(2)
        status = check()
    print(json.dumps({"ready": False, **status}))
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
