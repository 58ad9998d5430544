"""
本地状态持久化
登录 Token 与进行中的导入任务写入 JSON 文件，进程重启后可继续跟踪
"""

import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

from crm_client import config

logger = logging.getLogger(__name__)

KEY_TOKEN = "token"
KEY_TASK_ID = "currentUploadTaskId"
KEY_UPLOAD_INFO = "currentUploadInfo"


class StateStore:
    """
    JSON 文件键值存储

    每次修改后整体写回，先写临时文件再替换
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or config.STATE_FILE
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"读取本地状态失败，使用空状态: {self.path}, {e}")
            return {}

    def _save(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any):
        with self._lock:
            self._data[key] = value
            self._save()

    def delete(self, *keys: str):
        with self._lock:
            changed = False
            for key in keys:
                if key in self._data:
                    del self._data[key]
                    changed = True
            if changed:
                self._save()

    # ==================== 导入任务 ====================

    def save_task(self, task_id: int, file_name: Optional[str] = None, file_size: Optional[int] = None):
        """记录当前导入任务；提供文件信息时同时刷新上传信息"""
        with self._lock:
            self._data[KEY_TASK_ID] = task_id
            if file_name is not None:
                self._data[KEY_UPLOAD_INFO] = {
                    "fileName": file_name,
                    "fileSize": file_size,
                    "startTime": time.time()
                }
            self._save()

    def save_upload_info(self, file_name: str, file_size: int):
        """上传开始前记录文件信息，直传超时后用来找回任务"""
        self.set(KEY_UPLOAD_INFO, {"fileName": file_name, "fileSize": file_size, "startTime": time.time()})

    def get_task_id(self) -> Optional[int]:
        value = self.get(KEY_TASK_ID)
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def get_upload_info(self, max_age: float = config.UPLOAD_INFO_TTL) -> Optional[Dict[str, Any]]:
        """获取上传信息，超过有效期视为过期返回 None"""
        info = self.get(KEY_UPLOAD_INFO)
        if not isinstance(info, dict):
            return None
        started = info.get("startTime") or 0
        if time.time() - started > max_age:
            return None
        return info

    def clear_task(self):
        """任务结束后清除任务 ID 与上传信息"""
        self.delete(KEY_TASK_ID, KEY_UPLOAD_INFO)
