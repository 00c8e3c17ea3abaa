from loguru import logger
from typing import List, Optional

import argparse
import asyncio
import json
import os
import sys
from dotenv import load_dotenv

from module.audio_preview import (
    BatchPreloader,
    PreviewConfig,
    PreviewQuery,
    PreviewResolver,
    ProxyPool,
    QueryKind,
    CacheStore,
    PreviewError,
)

version = "v1.0"

# ─────────────────────────────────────────────────────────
#  子指令
# ─────────────────────────────────────────────────────────

async def cmd_resolve(config: PreviewConfig, args) -> int:
    kind = args.kind or (QueryKind.SONG if args.track else QueryKind.ARTIST)
    query = PreviewQuery(args.artist, args.track, kind)

    async with PreviewResolver.from_config(config) as resolver:
        preview = await resolver.resolve(query, skip_cache=args.skip_cache)

    if preview is None:
        logger.warning(f"[解析] 找不到預覽: {query}")
        print_json(None)
        return 1

    print_json({**preview.to_dict(), "playableUrl": preview.playable_url})
    return 0


async def cmd_preload(config: PreviewConfig, args) -> int:
    try:
        with open(args.file, "r", encoding="utf-8") as f:
            questions = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"[預載] {args.file} 不是有效的 JSON: {e}")
        return 2
    if not isinstance(questions, list):
        logger.error(f"[預載] {args.file} 必須是 JSON 陣列")
        return 2

    def on_progress(progress):
        logger.info(f"[預載] {progress.processed}/{progress.total}（有預覽 {progress.with_preview}）")

    async with PreviewResolver.from_config(config) as resolver:
        results = await BatchPreloader(resolver).preload(questions, on_progress=on_progress)

    payload = [item.to_dict() for item in results]
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        logger.info(f"[預載] 已寫入 {args.output}")
    else:
        print_json(payload)
    return 0


async def cmd_clear_cache(config: PreviewConfig, args) -> int:
    cache = CacheStore(config.cache_dir, ttl=config.cache_ttl)
    if args.artist:
        kind = QueryKind.SONG if args.track else QueryKind.ARTIST
        removed = cache.clear(PreviewQuery(args.artist, args.track, kind))
    else:
        removed = cache.clear()
    print_json({"removed": removed})
    return 0


async def cmd_refresh_proxies(config: PreviewConfig, args) -> int:
    pool = ProxyPool(
        sources=config.proxy_sources,
        reliable_proxies=config.proxy_reliable,
        cache_path=config.proxy_cache_path,
        test_url=config.proxy_test_url,
        test_timeout=config.proxy_test_timeout,
    )
    pool.load_cache()
    try:
        total = await pool.refresh()
    finally:
        await pool.cleanup()
    print_json({"proxies": total, "working": len(pool.working_proxies), "banned": len(pool.banned_proxies)})
    return 0


COMMANDS = {
    "resolve": cmd_resolve,
    "preload": cmd_preload,
    "clear-cache": cmd_clear_cache,
    "refresh-proxies": cmd_refresh_proxies,
}


def print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))

# ─────────────────────────────────────────────────────────
#  參數解析
# ─────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="audio-preview", description="替歌手 / 歌曲查詢解析短預覽")
    parser.add_argument("--version", action="version", version=f"%(prog)s {version}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="解析單一查詢")
    p.add_argument("artist", help="歌手名稱")
    p.add_argument("track", nargs="?", default=None, help="歌曲名稱（省略則為歌手查詢）")
    p.add_argument("--kind", choices=[k.value for k in QueryKind], default=None)
    p.add_argument("--skip-cache", action="store_true", help="略過快取讀取")

    p = sub.add_parser("preload", help="批次預載 JSON 題目清單")
    p.add_argument("file", help="題目清單（[{type, artistName, answer?, previewUrl?}]）")
    p.add_argument("-o", "--output", default=None, help="輸出檔案（預設印到 stdout）")

    p = sub.add_parser("clear-cache", help="清除快取（不帶參數則清除全部）")
    p.add_argument("artist", nargs="?", default=None)
    p.add_argument("track", nargs="?", default=None)

    sub.add_parser("refresh-proxies", help="重新抓取並測試代理")
    return parser

# ─────────────────────────────────────────────────────────
#  Loguru 記錄器設定
# ─────────────────────────────────────────────────────────

def set_logger():
    """設定 Loguru 的輸出行為（終端機 & 檔案）"""
    logger.remove()
    debug_mode = os.getenv('DEBUG', '').lower() in ('true', '1', 'yes')

    # 終端輸出（stdout 留給 JSON 結果）
    logger.add(sys.stderr, level="DEBUG" if debug_mode else "INFO", colorize=True)

    # 檔案輸出（每 7 天輪替，保留 30 天，自動壓縮）
    logger.add(
        "./logs/system.log",
        rotation="7 days",
        retention="30 days",
        encoding="UTF-8",
        compression="zip",
        level="INFO",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

# ─────────────────────────────────────────────────────────
#  程式入口點
# ─────────────────────────────────────────────────────────

def cli(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    set_logger()

    args = build_parser().parse_args(argv)

    try:
        config = PreviewConfig.from_env()
        return asyncio.run(COMMANDS[args.command](config, args))
    except PreviewError as e:
        logger.critical(f"❗ {e.user_message}：{e.message}")
        return 2
    except OSError as e:
        logger.critical(f"❗ 檔案讀寫失敗：{e}")
        return 2


if __name__ == '__main__':
    sys.exit(cli())
