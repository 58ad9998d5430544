"""
分块上传服务
大文件由客户端切块并发上传，服务端按 uploadId 暂存分块，全部到齐后合并
"""

import json
import logging
import os
import re
import shutil
import threading
import time
from typing import List, Optional

from crm_server import config
from crm_server.constants import MAX_UPLOAD_SIZE, CHUNK_EXPIRE_SECONDS
from crm_server.services.import_service import ImportValidationError, new_upload_path

logger = logging.getLogger(__name__)

UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
META_FILE = "meta.json"
MAX_TOTAL_CHUNKS = 100000


class ChunkIncompleteError(Exception):
    """分块未全部到齐"""

    def __init__(self, upload_id: str, missing: List[int]):
        self.upload_id = upload_id
        self.missing = missing
        super().__init__(f"分块未全部上传: {upload_id}, 缺少 {len(missing)} 块")


class ChunkUploadService:
    """分块上传服务类"""

    _lock = threading.Lock()

    @staticmethod
    def _chunk_root() -> str:
        root = os.path.abspath(config.CHUNK_DIR)
        os.makedirs(root, exist_ok=True)
        return root

    @staticmethod
    def _upload_dir(upload_id: str) -> str:
        if not upload_id or not UPLOAD_ID_PATTERN.match(upload_id):
            raise ImportValidationError("无效的上传ID")
        return os.path.join(ChunkUploadService._chunk_root(), upload_id)

    @staticmethod
    def _read_meta(upload_dir: str) -> Optional[dict]:
        try:
            with open(os.path.join(upload_dir, META_FILE), "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    @staticmethod
    def save_chunk(upload_id: str, chunk_index: int, total_chunks: int,
                   file_name: str, total_size: int, data: bytes) -> int:
        """
        保存一个分块

        Args:
            upload_id: 上传ID（时间戳_随机串）
            chunk_index: 分块序号（从 0 开始）
            total_chunks: 分块总数
            file_name: 原始文件名
            total_size: 文件总大小
            data: 分块内容

        Returns:
            已接收的分块数

        Raises:
            ImportValidationError: 参数不合法
        """
        upload_dir = ChunkUploadService._upload_dir(upload_id)
        if total_chunks <= 0 or total_chunks > MAX_TOTAL_CHUNKS:
            raise ImportValidationError("分块总数不合法")
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise ImportValidationError("分块序号超出范围")
        if total_size > MAX_UPLOAD_SIZE:
            raise ImportValidationError("文件大小不能超过1GB")
        if not data:
            raise ImportValidationError("分块内容为空")

        with ChunkUploadService._lock:
            os.makedirs(upload_dir, exist_ok=True)
            meta = ChunkUploadService._read_meta(upload_dir)
            if meta is None:
                meta = {
                    "fileName": file_name,
                    "totalChunks": total_chunks,
                    "totalSize": total_size,
                    "createTime": time.time()
                }
                with open(os.path.join(upload_dir, META_FILE), "w", encoding="utf-8") as f:
                    json.dump(meta, f, ensure_ascii=False)
            elif meta["totalChunks"] != total_chunks:
                raise ImportValidationError("分块总数与首个分块不一致")

        # 先写临时文件再改名，半截分块不会被计入
        chunk_path = os.path.join(upload_dir, f"chunk_{chunk_index}")
        part_path = f"{chunk_path}.{threading.get_ident()}.part"
        with open(part_path, "wb") as f:
            f.write(data)
        os.replace(part_path, chunk_path)

        received = len(ChunkUploadService.received_chunks(upload_id))
        logger.debug(f"接收分块 {chunk_index + 1}/{total_chunks}: {upload_id}")
        return received

    @staticmethod
    def received_chunks(upload_id: str) -> List[int]:
        """已接收的分块序号（升序）"""
        upload_dir = ChunkUploadService._upload_dir(upload_id)
        if not os.path.isdir(upload_dir):
            return []
        indexes = []
        for name in os.listdir(upload_dir):
            if name.startswith("chunk_") and name[6:].isdigit():
                indexes.append(int(name[6:]))
        return sorted(indexes)

    @staticmethod
    def is_complete(upload_id: str) -> bool:
        """是否所有分块都已到齐"""
        upload_dir = ChunkUploadService._upload_dir(upload_id)
        meta = ChunkUploadService._read_meta(upload_dir) if os.path.isdir(upload_dir) else None
        if meta is None:
            return False
        return len(ChunkUploadService.received_chunks(upload_id)) == meta["totalChunks"]

    @staticmethod
    def merge(upload_id: str, file_name: str) -> str:
        """
        按序合并分块为完整文件，合并后删除分块目录

        Returns:
            合并后的文件路径

        Raises:
            ChunkIncompleteError: 分块未到齐
            ImportValidationError: 上传不存在或大小不一致
        """
        upload_dir = ChunkUploadService._upload_dir(upload_id)
        meta = ChunkUploadService._read_meta(upload_dir) if os.path.isdir(upload_dir) else None
        if meta is None:
            raise ImportValidationError("上传记录不存在或已过期")

        total_chunks = meta["totalChunks"]
        received = set(ChunkUploadService.received_chunks(upload_id))
        missing = [i for i in range(total_chunks) if i not in received]
        if missing:
            raise ChunkIncompleteError(upload_id, missing)

        target_path = new_upload_path(file_name)
        with open(target_path, "wb") as target:
            for index in range(total_chunks):
                with open(os.path.join(upload_dir, f"chunk_{index}"), "rb") as chunk:
                    shutil.copyfileobj(chunk, target, 1024 * 1024)

        merged_size = os.path.getsize(target_path)
        expected_size = meta.get("totalSize") or 0
        if expected_size and merged_size != expected_size:
            os.remove(target_path)
            raise ImportValidationError(f"合并后文件大小不一致: {merged_size} != {expected_size}")

        ChunkUploadService.cleanup(upload_id)
        logger.info(f"分块合并完成: {file_name}, {total_chunks} 块, {merged_size} 字节")
        return target_path

    @staticmethod
    def cleanup(upload_id: str) -> bool:
        """删除上传的所有分块，目录不存在返回 False"""
        upload_dir = ChunkUploadService._upload_dir(upload_id)
        if not os.path.isdir(upload_dir):
            return False
        shutil.rmtree(upload_dir, ignore_errors=True)
        logger.info(f"已清理分块目录: {upload_id}")
        return True

    @staticmethod
    def sweep_expired(max_age_seconds: int = CHUNK_EXPIRE_SECONDS) -> int:
        """清理超过有效期未合并的分块目录，返回清理数量"""
        root = ChunkUploadService._chunk_root()
        now = time.time()
        removed = 0
        for name in os.listdir(root):
            path = os.path.join(root, name)
            if os.path.isdir(path) and now - os.path.getmtime(path) > max_age_seconds:
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        if removed:
            logger.info(f"清理过期分块目录 {removed} 个")
        return removed
