"""Tests for the HTTP entry point.

The app is driven through FastAPI's ``TestClient`` with a static registry and
an ``httpx.MockTransport`` standing in for the Nitter instances, so no network
access is needed.
"""

from unittest import TestCase

import httpx
from fastapi.testclient import TestClient

from nitter_rss_proxy.app_server import create_app
from nitter_rss_proxy.config import FeedFormat, Settings, StaticProviderConfig
from nitter_rss_proxy.tools.registry import StaticInstanceRegistry
from samples import NITTER_RSS

INSTANCES = "https://one.example,https://two.example"


class TestAPI(TestCase):
    def setUp(self) -> None:
        self.down = set()
        self.requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requested.append(str(request.url))
            if request.url.host in self.down:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=NITTER_RSS)

        self.transport = httpx.MockTransport(handler)

    def client(self, format: FeedFormat = FeedFormat.ATOM) -> TestClient:
        settings = Settings(format=format, static=StaticProviderConfig(instances=INSTANCES), debug_authors=False)
        app = create_app(settings, registry=StaticInstanceRegistry.from_csv(INSTANCES), transport=self.transport)
        return TestClient(app)

    def test_serves_feed(self) -> None:
        with self.client() as client:
            response = client.get("/NASA")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["content-type"], "application/atom+xml; charset=UTF-8")
        self.assertIn("https://twitter.com/NASA/status/1610328347927552001", response.text)
        self.assertEqual(self.requested, ["https://one.example/NASA/rss"])

    def test_content_type_per_format(self) -> None:
        for format, content_type in (
            (FeedFormat.JSON, "application/json; charset=UTF-8"),
            (FeedFormat.RSS, "application/rss+xml; charset=UTF-8"),
        ):
            with self.subTest(format=format):
                with self.client(format) as client:
                    response = client.get("/NASA,SpaceX/media")
                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.headers["content-type"], content_type)

    def test_only_get(self) -> None:
        with self.client() as client:
            response = client.post("/NASA")
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.text, "Only GET supported")
        self.assertEqual(self.requested, [])

    def test_invalid_user(self) -> None:
        self.down = {"one.example", "two.example"}
        with self.client() as client:
            response = client.get("/NASA/likes/")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.requested, [])

    def test_favicon(self) -> None:
        with self.client() as client:
            response = client.get("/favicon.ico")
        self.assertEqual(response.status_code, 404)

    def test_all_instances_down(self) -> None:
        self.down = {"one.example", "two.example"}
        with self.client() as client:
            response = client.get("/NASA")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.text, "Couldn't get feed from any instances")
        self.assertEqual(len(self.requested), 2)

    def test_failover_is_invisible_to_client(self) -> None:
        self.down = {"one.example"}
        with self.client() as client:
            response = client.get("/NASA")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.requested, ["https://one.example/NASA/rss", "https://two.example/NASA/rss"])

    def test_docs_routes_are_accounts(self) -> None:
        with self.client() as client:
            response = client.get("/docs")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.requested, ["https://one.example/docs/rss"])
