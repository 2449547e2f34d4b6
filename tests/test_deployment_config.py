"""
Deployment configuration tests
"""

import importlib
from unittest.mock import MagicMock

import gunicorn_conf
from config import Config


class TestGunicornConfig:

    def test_uses_uvicorn_workers(self):
        assert gunicorn_conf.worker_class == "uvicorn.workers.UvicornWorker"
        assert gunicorn_conf.preload_app is False

    def test_port_and_concurrency_from_environment(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("WEB_CONCURRENCY", "2")
        try:
            conf = importlib.reload(gunicorn_conf)
            assert conf.bind == "0.0.0.0:8080"
            assert conf.workers == 2
        finally:
            monkeypatch.undo()
            importlib.reload(gunicorn_conf)

    def test_hooks_log_through_gunicorn(self):
        server = MagicMock()
        worker = MagicMock(pid=4321)

        gunicorn_conf.when_ready(server)
        gunicorn_conf.post_fork(server, worker)

        assert server.log.info.call_count == 2
        assert "4321" in server.log.info.call_args[0][0]


class TestConfig:

    def test_test_environment_loaded(self):
        assert Config.PAYMENT_WEBHOOK_SECRET == "test-webhook-secret"
        assert Config.ADMIN_API_TOKEN == "test-admin-token"
        assert Config.IS_PRODUCTION is False
