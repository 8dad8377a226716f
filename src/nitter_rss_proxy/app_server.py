import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from nitter_rss_proxy.config import ConfigError, Settings, load_settings
from nitter_rss_proxy.tools.fetcher import (
    AllInstancesFailedError,
    FeedFetcher,
    InvalidAccountError,
    NotFoundError,
    extract_account,
    fetch_feed,
)
from nitter_rss_proxy.tools.registry import InstanceRegistry, registry_from_settings
from nitter_rss_proxy.tools.rss_feed_utils import FeedBuilder

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def build_fetcher(settings: Settings, registry: InstanceRegistry, client: httpx.AsyncClient) -> FeedFetcher:
    builder = FeedBuilder(
        settings.format,
        rewrite=settings.rewrite,
        base_url=settings.base_url,
        debug_authors=settings.debug_authors,
    )
    return FeedFetcher(
        registry,
        client,
        builder,
        cycle=settings.cycle,
        timeout=settings.timeout,
        request_timeout=settings.request_timeout,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[InstanceRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the proxy app.

    ``registry`` and ``transport`` let callers (mostly tests) replace the
    instance source and the outbound HTTP layer.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(transport=transport, timeout=settings.timeout) as client:
            reg = registry or registry_from_settings(settings, client)
            await reg.start()
            app.state.fetcher = build_fetcher(settings, reg, client)
            try:
                yield
            finally:
                await reg.close()

    # Every path is a potential account name, so the docs routes are disabled.
    app = FastAPI(
        title="Nitter RSS Proxy",
        description="Serve Nitter feeds with links rewritten to point at Twitter.",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def serve_feed(request: Request, path: str) -> Response:
        if request.method != "GET":
            return PlainTextResponse("Only GET supported", status_code=405)
        try:
            account = extract_account(request.url.path)
        except NotFoundError:
            return PlainTextResponse("File not found", status_code=404)
        except InvalidAccountError:
            return PlainTextResponse("Invalid user", status_code=400)

        try:
            result = await request.app.state.fetcher.fetch(account)
        except AllInstancesFailedError as exc:
            logger.error("%s", exc)
            return PlainTextResponse("Couldn't get feed from any instances", status_code=500)
        logger.info("Served %s from %s after %d failed attempt(s)",
                    account, result.instance, len(result.failed_attempts))
        return Response(content=result.feed.body, media_type=result.feed.content_type)

    return app


async def _write_feed(settings: Settings, account: str) -> bool:
    async with httpx.AsyncClient(timeout=settings.timeout) as client:
        registry = registry_from_settings(settings, client)
        await registry.start()
        try:
            feed = await fetch_feed(build_fetcher(settings, registry, client), account)
        finally:
            await registry.close()
    if feed is None:
        return False
    sys.stdout.buffer.write(feed.body)
    sys.stdout.flush()
    return True


def main(argv=None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Proxy Nitter RSS feeds with Twitter links.")
    parser.add_argument("--env-file", help="Path of a .env file with NITTER_RSS_* settings")
    parser.add_argument("--user", help="Account to fetch to stdout instead of starting a server")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(dotenv_path=args.env_file)
    except ConfigError as exc:
        logger.critical("Failed loading configuration: %s", exc)
        sys.exit(2)

    if args.user:
        try:
            account = extract_account("/" + args.user)
        except (InvalidAccountError, NotFoundError):
            logger.critical("Invalid user %r", args.user)
            sys.exit(2)
        sys.exit(0 if asyncio.run(_write_feed(settings, account)) else 1)

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
