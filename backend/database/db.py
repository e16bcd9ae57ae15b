import logging
import sys

from typing import Annotated, AsyncGenerator
from uuid import uuid4

from fastapi import Depends
from sqlalchemy import URL
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from backend.core.conf import settings
from backend.core.path_conf import BASE_PATH

logger = logging.getLogger(__name__)


class MappedBase(DeclarativeBase):
    """声明式基类，所有表模型都挂在它的 metadata 上"""


def create_database_url(*, unittest: bool = False) -> URL:
    """
    创建数据库链接

    :param unittest: 是否用于单元测试
    :return:
    """
    schema = settings.DATABASE_SCHEMA if not unittest else f'{settings.DATABASE_SCHEMA}_test'
    if settings.DATABASE_TYPE == 'sqlite':
        return URL.create(drivername='sqlite+aiosqlite', database=str(BASE_PATH / f'{schema}.db'))
    return URL.create(
        drivername='postgresql+asyncpg',
        username=settings.DATABASE_USER,
        password=settings.DATABASE_PASSWORD,
        host=settings.DATABASE_HOST,
        port=settings.DATABASE_PORT,
        database=schema,
    )


def create_async_engine_and_session(url: str | URL) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    创建数据库引擎和 Session

    :param url: 数据库连接 URL
    :return:
    """
    options = {'echo': settings.DATABASE_ECHO, 'echo_pool': settings.DATABASE_POOL_ECHO, 'future': True}
    if not str(url).startswith('sqlite'):
        options.update(
            pool_pre_ping=True,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_recycle=3600,
        )
    try:
        engine = create_async_engine(url, **options)
    except Exception as e:
        logger.error(f'❌ 数据库链接失败 {e}')
        sys.exit()
    else:
        db_session = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
        return engine, db_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话"""
    async with async_db_session() as session:
        yield session


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """创建数据库表"""
    async with (engine or async_engine).begin() as coon:
        await coon.run_sync(MappedBase.metadata.create_all)


async def drop_tables(engine: AsyncEngine | None = None) -> None:
    """删除数据库表"""
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(MappedBase.metadata.drop_all)


def uuid4_str() -> str:
    """数据库引擎 UUID 类型兼容性解决方案"""
    return str(uuid4())


# SQLA 数据库链接
SQLALCHEMY_DATABASE_URL = create_database_url()

# SALA 异步引擎和会话
async_engine, async_db_session = create_async_engine_and_session(SQLALCHEMY_DATABASE_URL)

# Session Annotated
CurrentSession = Annotated[AsyncSession, Depends(get_db)]
