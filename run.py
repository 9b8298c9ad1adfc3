#!/usr/bin/env python
"""
RAG chat API server launcher
"""
import os
import sys
import argparse
import asyncio

if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import uvicorn
from dotenv import load_dotenv

load_dotenv()


def parse_args():
    parser = argparse.ArgumentParser(description='RAG Chat API Server')
    parser.add_argument('--host', type=str, default=os.getenv('HOST', '0.0.0.0'), help='bind address')
    parser.add_argument('--port', type=int, default=int(os.getenv('PORT', '8000')), help='bind port')
    parser.add_argument('--reload', action='store_true', help='reload on code changes')
    parser.add_argument('--workers', type=int, default=1, help='worker processes')
    parser.add_argument('--engine', type=str, choices=['native', 'langchain'], default=None,
                        help='default chat engine (overrides CHAT_ENGINE)')
    parser.add_argument('--log-level', type=str, default='info',
                        choices=['critical', 'error', 'warning', 'info', 'debug', 'trace'],
                        help='uvicorn log level')
    return parser.parse_args()


def main():
    args = parse_args()

    if args.engine:
        os.environ['CHAT_ENGINE'] = args.engine

    print("\n" + "=" * 60)
    print("  RAG Chat API Server")
    print("=" * 60)
    print(f"  Host: {args.host}")
    print(f"  Port: {args.port}")
    print(f"  Engine: {os.getenv('CHAT_ENGINE', 'native')}")
    print(f"  Reload: {args.reload}")
    print(f"  Workers: {args.workers}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "ragchat.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers if not args.reload else 1,
        log_level=args.log_level,
        access_log=True,
    )


if __name__ == "__main__":
    main()
