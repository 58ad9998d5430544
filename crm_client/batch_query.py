"""
批量查询输入解析
每行一条，按空白分隔：
    13800138001                 -> 电话
    张三 13800138001            -> 姓名 电话
    张三 13800138001 北京 朝阳  -> 姓名 电话 地址（其余部分拼接为地址）
"""

from typing import Dict, List

from crm_client import config
from crm_client.errors import ValidationError


def parse_batch_line(line: str) -> Dict[str, str]:
    tokens = line.split()
    if not tokens:
        return {}
    if len(tokens) == 1:
        return {"phone": tokens[0]}
    if len(tokens) == 2:
        return {"name": tokens[0], "phone": tokens[1]}
    return {"name": tokens[0], "phone": tokens[1], "address": " ".join(tokens[2:])}


def parse_batch_input(text: str, limit: int = config.MAX_BATCH_QUERY_ITEMS) -> List[Dict[str, str]]:
    """
    解析批量查询文本

    Args:
        text: 多行文本
        limit: 最大条数

    Returns:
        查询条件列表，空行跳过，只保留有姓名或电话的条目

    Raises:
        ValidationError: 没有有效条目或超过上限
    """
    items = []
    for line in (text or "").splitlines():
        item = parse_batch_line(line)
        if item.get("phone") or item.get("name"):
            items.append(item)

    if not items:
        raise ValidationError("请输入查询条件")
    if len(items) > limit:
        raise ValidationError(f"单次最多查询 {limit} 条，当前 {len(items)} 条")
    return items
