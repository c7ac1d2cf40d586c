#!/usr/bin/env python3
"""Quoteboard command line.

Usage:
    quoteboard serve --host 0.0.0.0 --port 8000
    quoteboard remind-once
    quoteboard init-db
    quoteboard create-user alice
"""
import argparse
import asyncio
import getpass
import logging
import sys


def _serve(args):
    import uvicorn

    uvicorn.run("quoteboard.main:app", host=args.host, port=args.port, reload=args.reload)


async def _remind_once():
    from quoteboard.adapters import create_notifier
    from quoteboard.config import get_config
    from quoteboard.db.connection import close_db, init_db
    from quoteboard.pipeline import PipelineStore
    from quoteboard.reminders import ReminderEngine

    await init_db()
    try:
        engine = ReminderEngine(PipelineStore(), create_notifier(get_config()))
        result = await engine.tick()
    finally:
        await close_db()
    print(
        f"due={result.due} sent={len(result.sent)} failed={len(result.failed)} "
        f"rescheduled={len(result.rescheduled)}"
    )
    return 1 if result.failed or result.error else 0


async def _init_db():
    from quoteboard.db.connection import close_db, get_session, init_db
    from quoteboard.auth import ensure_admin_user
    from quoteboard.pipeline import PipelineStore

    await init_db()
    try:
        repaired = await PipelineStore().repair_positions()
        async with get_session() as session:
            await ensure_admin_user(session)
    finally:
        await close_db()
    print(f"Database ready ({repaired} stage(s) renumbered)")
    return 0


async def _create_user(username, password):
    from quoteboard.auth import register_user
    from quoteboard.db.connection import close_db, get_session, init_db

    await init_db()
    try:
        async with get_session() as session:
            user = await register_user(session, username, password)
    finally:
        await close_db()
    print(f"Created user {user.username} ({user.id})")
    return 0


def main(argv=None):
    from quoteboard.errors import QuoteboardError

    parser = argparse.ArgumentParser(
        prog='quoteboard',
        description='Sales quote pipeline with follow-up reminders',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', help='Run the API server')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=8000)
    serve.add_argument('--reload', action='store_true', help='Auto-reload on code changes')

    sub.add_parser('remind-once', help='Run a single reminder tick and exit')
    sub.add_parser('init-db', help='Create tables, migrate legacy stages, bootstrap admin')

    create_user = sub.add_parser('create-user', help='Create a login')
    create_user.add_argument('username')
    create_user.add_argument('--password', help='Prompted for when omitted')

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.command == 'serve':
        _serve(args)
        return 0

    try:
        if args.command == 'remind-once':
            return asyncio.run(_remind_once())
        if args.command == 'init-db':
            return asyncio.run(_init_db())
        if args.command == 'create-user':
            password = args.password or getpass.getpass('Password: ')
            return asyncio.run(_create_user(args.username, password))
    except QuoteboardError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
