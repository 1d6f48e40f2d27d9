# alembic/env.py
from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# 模型在 fileConfig 之后再导入，避免 logging 配置被覆盖
from app.db.base import Base, init_models  # noqa: E402
from app.db.engine import normalize_async_dsn  # noqa: E402


def get_url() -> str:
    """
    DATABASE_URL 优先，其次 alembic.ini 的 sqlalchemy.url。
    与应用共用 DSN 规范化；迁移走同步驱动：
    postgresql+psycopg 本身同步可用，sqlite+aiosqlite 退回 pysqlite。
    """
    raw = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not raw:
        raise RuntimeError(
            "Alembic cannot determine the database URL: set DATABASE_URL "
            "or sqlalchemy.url in alembic.ini"
        )
    url = normalize_async_dsn(raw)
    if url.startswith("sqlite+aiosqlite://"):
        url = "sqlite://" + url[len("sqlite+aiosqlite://"):]
    return url


def _configure(**kwargs) -> None:
    init_models()
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        compare_server_default=False,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """只生成 SQL，不连库。"""
    _configure(url=get_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = get_url()
    engine = create_engine(url, poolclass=NullPool)
    with engine.connect() as connection:
        # SQLite 不支持 ALTER 约束，走 batch 模式
        _configure(connection=connection, render_as_batch=url.startswith("sqlite"))
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
