#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
TIMPs - 主入口

子命令：
- chat: 交互式对话
- audit: 查看最近写入的记忆
- search: 按关键词查找记忆
- forget: 按关键词删除记忆
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from timps.agent import MemoryAgent
from timps.config.settings import AppConfig, load_config
from timps.factory import MemorySystem, create_memory_system
from timps.llm import create_llm_client
from timps.memory.types import Memory

logger = logging.getLogger('timps')


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """设置日志"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # 控制台只显示 WARNING 及以上
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter('%(levelname)s - %(message)s'))
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)

    for logger_name in ('asyncio', 'aiohttp'):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def _format_memory(memory: Memory) -> str:
    created = memory.created_at.strftime('%Y-%m-%d %H:%M') if memory.created_at else '-'
    return f"[{memory.id}] ({memory.memory_type.value}, importance={memory.importance}, {created}) {memory.content}"


async def run_chat(config: AppConfig, system: MemorySystem, args) -> int:
    """交互式对话"""
    llm = create_llm_client(config.llm)
    agent = MemoryAgent(
        llm,
        system.memory_index,
        user_id=args.user_id,
        project_id=args.project,
        username=args.username,
        memory_mode="ephemeral" if args.ephemeral else "persistent",
        max_tokens=config.llm.max_tokens,
        temperature=config.llm.temperature,
    )

    print("TIMPs 已就绪，输入 /exit 退出，/remember <内容> 显式记忆")
    while True:
        try:
            user_input = input("你: ").strip()
        except (KeyboardInterrupt, EOFError):
            print()
            break

        if not user_input:
            continue
        if user_input in ('/exit', '/quit'):
            break
        if user_input.startswith('/remember '):
            result = await agent.remember(user_input[len('/remember '):].strip())
            print(f"已记住 [{result.memory.id}] ({result.status.value})")
            continue

        try:
            response = await agent.run(user_input)
        except Exception as e:
            logger.error(f"对话失败: {e}")
            print(f"出错了: {e}")
            continue
        print(f"助手: {response.content}")

    await agent.end_session()
    return 0


async def run_audit(system: MemorySystem, args) -> int:
    memories = await system.long_term.audit_memories(args.user_id, args.project, args.limit)
    if not memories:
        print("没有记忆")
    for memory in memories:
        print(_format_memory(memory))
    return 0


async def run_search(system: MemorySystem, args) -> int:
    memories = await system.long_term.search_memories(args.user_id, args.project, args.keyword)
    if not memories:
        print(f"没有与 '{args.keyword}' 相关的记忆")
    for memory in memories:
        print(_format_memory(memory))
    return 0


async def run_forget(system: MemorySystem, args) -> int:
    deleted = await system.long_term.forget_memories(args.user_id, args.project, args.keyword)
    print(f"已删除 {len(deleted)} 条记忆" + (f": {deleted}" if deleted else ""))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='timps', description='TIMPs - 带长期记忆的对话助手')
    parser.add_argument('--config', help='YAML 配置文件（默认读取 TIMPS_CONFIG）')
    parser.add_argument('--log-level', help='日志级别')
    parser.add_argument('--log-file', help='日志文件')
    parser.add_argument('--user-id', type=int, default=1, help='用户ID')
    parser.add_argument('--project', default='default', help='项目ID')

    subparsers = parser.add_subparsers(dest='command', required=True)

    chat = subparsers.add_parser('chat', help='交互式对话')
    chat.add_argument('--username', help='用户名')
    chat.add_argument('--ephemeral', action='store_true', help='只读长期记忆，不写入')

    audit = subparsers.add_parser('audit', help='查看最近的记忆')
    audit.add_argument('--limit', type=int, default=10, help='显示条数')

    search = subparsers.add_parser('search', help='按关键词查找记忆')
    search.add_argument('keyword', help='关键词')

    forget = subparsers.add_parser('forget', help='按关键词删除记忆')
    forget.add_argument('keyword', help='关键词')

    return parser


async def async_main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()

    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(args.log_level or config.log_level, args.log_file)

    system = create_memory_system(config)
    try:
        if args.command == 'chat':
            return await run_chat(config, system, args)
        if args.command == 'audit':
            return await run_audit(system, args)
        if args.command == 'search':
            return await run_search(system, args)
        if args.command == 'forget':
            return await run_forget(system, args)
        return 1
    finally:
        system.close()


def main():
    """主入口"""
    sys.exit(asyncio.run(async_main()))


if __name__ == '__main__':
    main()
