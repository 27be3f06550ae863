"""
操作日志
所有改变业务状态的操作都在同一事务内写一条 logs 记录
"""

import json
from typing import Any, Dict, Optional


def log_action(conn, action: str, user_id: Optional[int] = None,
               actor_id: Optional[int] = None, detail: Optional[Dict[str, Any]] = None):
    """写入一条操作日志"""
    conn.execute(
        "INSERT INTO logs(user_id, actor_id, action, detail_json) VALUES (?,?,?,?)",
        [user_id, actor_id, action, json.dumps(detail or {}, default=str, ensure_ascii=False)],
    )
