"""Tests for SSL context and connector factories."""

import ssl

import aiohttp
import pytest

from foreman_cockpit_session.config import Settings
from foreman_cockpit_session.connection import (
    build_session_headers,
    create_directory_connector,
    create_directory_ssl_context,
    create_directory_timeout,
    create_proxy_ssl_context,
)
from foreman_cockpit_session.errors import TransportFault


class TestSslContexts:
    def test_directory_context_verifies(self):
        ctx = create_directory_ssl_context()
        assert ctx.verify_mode == ssl.CERT_REQUIRED
        assert ctx.check_hostname

    def test_directory_context_loads_ca(self, tls_material):
        ctx = create_directory_ssl_context(tls_material.ca_file)
        subjects = [dict(item[0] for item in cert["subject"]) for cert in ctx.get_ca_certs()]
        assert {"commonName": "test-ca"} in subjects

    @pytest.mark.parametrize("settings", [
        Settings(),
        Settings(ssl_certificate="/client.pem"),
        Settings(ssl_private_key="/client.key"),
    ])
    def test_proxy_context_requires_identity(self, settings):
        with pytest.raises(TransportFault, match="required"):
            create_proxy_ssl_context(settings)

    def test_proxy_context_unreadable_identity(self, tmp_path):
        settings = Settings(
            ssl_certificate=str(tmp_path / "missing.pem"),
            ssl_private_key=str(tmp_path / "missing.key"),
        )
        with pytest.raises(TransportFault, match="Cannot load client certificate"):
            create_proxy_ssl_context(settings)

    def test_proxy_context_with_identity(self, tls_material):
        ctx = create_proxy_ssl_context(Settings(
            ssl_ca_file=tls_material.ca_file,
            ssl_certificate=tls_material.client_cert,
            ssl_private_key=tls_material.client_key,
        ))
        assert ctx.verify_mode == ssl.CERT_REQUIRED


class TestDirectoryClient:
    def test_timeout_is_unbounded(self):
        assert create_directory_timeout().total is None

    @pytest.mark.asyncio
    async def test_connector_uses_context(self):
        ctx = create_directory_ssl_context()
        connector = create_directory_connector(ssl_context=ctx)
        try:
            assert isinstance(connector, aiohttp.TCPConnector)
        finally:
            await connector.close()

    def test_session_headers(self):
        assert build_session_headers("abc") == {
            "Cookie": "_session_id=abc",
            "Accept": "application/json",
        }
