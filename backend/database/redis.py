import logging

from redis.asyncio import Redis
from redis.exceptions import AuthenticationError, TimeoutError

from backend.core.conf import settings

logger = logging.getLogger(__name__)


class RedisCli(Redis):
    def __init__(self) -> None:
        super(RedisCli, self).__init__(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            username=settings.REDIS_USERNAME,
            password=settings.REDIS_PASSWORD or None,
            db=settings.REDIS_DATABASE,
            socket_timeout=settings.REDIS_TIMEOUT,
            socket_connect_timeout=settings.REDIS_TIMEOUT,
            socket_keepalive=True,
            health_check_interval=30,
            decode_responses=True,
        )

    async def open(self) -> None:
        """触发初始化连接"""
        try:
            await self.ping()
        except TimeoutError:
            logger.error('❌ 数据库 redis 连接超时')
            raise
        except AuthenticationError:
            logger.error('❌ 数据库 redis 连接认证失败')
            raise

    async def delete_prefix(self, prefix: str, exclude: str | list[str] | None = None) -> None:
        """
        删除指定前缀的所有 key

        :param prefix: 前缀
        :param exclude: 排除的 key
        :return:
        """
        keys = []
        async for key in self.scan_iter(match=f'{prefix}*'):
            if isinstance(exclude, str):
                if key != exclude:
                    keys.append(key)
            elif isinstance(exclude, list):
                if key not in exclude:
                    keys.append(key)
            else:
                keys.append(key)
        if keys:
            await self.delete(*keys)


# 创建 redis 客户端单例
redis_client: RedisCli = RedisCli()
