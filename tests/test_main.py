# -*- coding: utf-8 -*-
"""
命令行入口测试
"""
import tempfile
from pathlib import Path

import pytest

from timps.config.settings import load_config
from timps.factory import create_memory_system
from timps.main import async_main, build_parser


@pytest.fixture
def db_env(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv('TIMPS_DB_PATH', str(Path(tmpdir) / "timps.db"))
        monkeypatch.setenv('VECTOR_BACKEND', 'none')
        monkeypatch.delenv('TIMPS_CONFIG', raising=False)
        yield tmpdir


class TestParser:

    def test_subcommands(self):
        parser = build_parser()

        args = parser.parse_args(['--user-id', '3', 'forget', 'secret'])
        assert args.command == 'forget'
        assert args.keyword == 'secret'
        assert args.user_id == 3
        assert args.project == 'default'

        args = parser.parse_args(['chat', '--ephemeral'])
        assert args.ephemeral

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """audit / search / forget 走同一个数据库文件"""

    @pytest.mark.asyncio
    async def test_audit_search_forget(self, db_env, capsys):
        system = create_memory_system(load_config())
        await system.long_term.store_memory(1, "default", "my secret plan")
        await system.long_term.store_memory(1, "default", "public note")
        system.close()

        assert await async_main(['audit', '--limit', '5']) == 0
        out = capsys.readouterr().out
        assert "my secret plan" in out
        assert "public note" in out

        assert await async_main(['search', 'SECRET']) == 0
        out = capsys.readouterr().out
        assert "my secret plan" in out
        assert "public note" not in out

        assert await async_main(['forget', 'secret']) == 0
        assert "已删除 1 条记忆" in capsys.readouterr().out

        assert await async_main(['search', 'secret']) == 0
        assert "没有与 'secret' 相关的记忆" in capsys.readouterr().out
