"""セッション参照 (発行は認証サービス側、ここでは読み取りのみ)"""
from typing import Optional
import redis.asyncio as aioredis

SESSION_PREFIX = "session:"


async def get_session(r: aioredis.Redis, session_id: str) -> Optional[dict]:
    """セッション情報を取得。見つからなければNone"""
    if not session_id:
        return None
    data = await r.hgetall(f"{SESSION_PREFIX}{session_id}")
    if not data:
        return None
    return data
