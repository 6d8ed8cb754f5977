"""Unit tests for generated compose files, nginx routes and certificates."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from unideploy.config import ProxyConfig
from unideploy.models import DeploymentContext, RouteType
from unideploy.pipeline.certificates import CertificateManager, CertificatePaths, CertificateResult, subject_alt_names
from unideploy.pipeline.compose import COMPOSE_FILENAME, ComposeWriter, compose_services
from unideploy.pipeline.proxy import NginxConfigurator, RouteSpec
from unideploy.pipeline.templates import TemplateRenderer


def _context(**fields) -> DeploymentContext:
    return DeploymentContext(app_name="shop", image=fields.pop("image", "acme/shop"), tag="v2", port=8080, **fields)


class TestCompose:
    def test_single_image_service(self) -> None:
        rendered = ComposeWriter().render(_context())

        assert "  app:\n" in rendered
        assert "    image: acme/shop:v2\n" in rendered
        assert "    container_name: shop-app\n" in rendered
        assert '      - "8080:8080"\n' in rendered
        assert "    profiles:\n      - app\n" in rendered
        assert "    name: shop-network\n" in rendered

    def test_multiple_images(self) -> None:
        ctx = _context(image="acme/shop-web, registry.example.com/acme/shop-worker")

        services = compose_services(ctx)

        assert [s["image"] for s in services] == [
            "acme/shop-web:v2",
            "registry.example.com/acme/shop-worker:v2",
        ]
        assert services[0]["ports"] == ["8080:8080"]
        assert services[1]["ports"] == []
        assert services[0]["container_name"] == ctx.container_name

    def test_environment_is_quoted(self) -> None:
        ctx = _context(env_vars={"DATABASE_URL": "postgres://u:p@db/shop", "GREETING": 'say "hi"'})

        rendered = ComposeWriter().render(ctx)

        assert '      - "DATABASE_URL=postgres://u:p@db/shop"\n' in rendered
        assert '      - "GREETING=say \\"hi\\""\n' in rendered

    def test_optional_sections(self) -> None:
        ctx = _context(
            use_profiles=False,
            volumes="data:/var/lib/shop, ./uploads:/uploads",
            extra_hosts=["db.internal:10.0.0.5"],
        )

        rendered = ComposeWriter().render(ctx)

        assert "profiles:" not in rendered
        assert "      - data:/var/lib/shop\n" in rendered
        assert "      - ./uploads:/uploads\n" in rendered
        assert '      - "db.internal:10.0.0.5"\n' in rendered

    def test_write_generated_file_is_private(self, tmp_path: Path) -> None:
        target = ComposeWriter().write(_context(), tmp_path / "shop")

        assert target == tmp_path / "shop" / COMPOSE_FILENAME
        assert "acme/shop:v2" in target.read_text()
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(target.parent).st_mode) == 0o700

    def test_provided_compose_file_is_copied(self, tmp_path: Path) -> None:
        source = tmp_path / "compose.custom.yml"
        source.write_text("services:\n  web:\n    image: nginx:1.25\n")
        ctx = DeploymentContext(app_name="shop", compose_file=source)

        target = ComposeWriter().write(ctx, tmp_path / "shop")

        assert target.read_text() == source.read_text()

    def test_missing_compose_file(self, tmp_path: Path) -> None:
        ctx = DeploymentContext(app_name="shop", compose_file=tmp_path / "absent.yml")

        with pytest.raises(FileNotFoundError):
            ComposeWriter().write(ctx, tmp_path / "shop")

    def test_template_override(self, tmp_path: Path) -> None:
        (tmp_path / "docker-compose.yml.j2").write_text("# custom {{ app_name }}\n")
        renderer = TemplateRenderer(override_dir=tmp_path)

        assert ComposeWriter(renderer).render(_context()) == "# custom shop\n"
        assert "nginx.conf.j2" in renderer.list_templates()


class TestRouteSpec:
    @pytest.mark.parametrize(
        "route_type,route,server_name,location",
        [
            (RouteType.PATH, "shop", "example.com", "/shop"),
            (RouteType.PATH, "/api//v1/", "example.com", "/api/v1"),
            (RouteType.PATH, "", "example.com", "/"),
            (RouteType.SUBDOMAIN, "shop", "shop.example.com", "/"),
        ],
    )
    def test_server_name_and_location(
        self, route_type: RouteType, route: str, server_name: str, location: str
    ) -> None:
        spec = RouteSpec(app_name="shop", domain="example.com", route_type=route_type, route=route, port=3000)

        assert spec.server_name == server_name
        assert spec.location == location


class TestNginxConfigurator:
    @pytest.fixture
    def nginx(self, tmp_path: Path) -> NginxConfigurator:
        return NginxConfigurator(
            ProxyConfig(
                config_dir=tmp_path / "conf.d",
                certs_dir=tmp_path / "certs",
                reload_command=["true"],
            )
        )

    def test_path_route_over_tls(self, nginx: NginxConfigurator, tmp_path: Path) -> None:
        config = nginx.render(RouteSpec(app_name="shop", domain="example.com", route="shop", port=3000))

        assert "server_name example.com;" in config
        assert "return 301 https://$host$request_uri;" in config
        assert f"ssl_certificate {tmp_path / 'certs' / 'example.com' / 'fullchain.pem'};" in config
        assert "location /shop {" in config
        assert "rewrite ^/shop(/.*)?$ $1 break;" in config
        assert "proxy_pass http://localhost:3000;" in config

    def test_plain_subdomain_route(self, nginx: NginxConfigurator) -> None:
        config = nginx.render(
            RouteSpec(
                app_name="shop",
                domain="example.com",
                route_type=RouteType.SUBDOMAIN,
                route="shop",
                port=4000,
                ssl=False,
            )
        )

        assert "server_name shop.example.com;" in config
        assert "listen 443" not in config
        assert "rewrite" not in config
        assert "location / {" in config

    @pytest.mark.asyncio
    async def test_write_restore_remove(self, nginx: NginxConfigurator) -> None:
        v1 = RouteSpec(app_name="shop", domain="example.com", route="shop", port=3000, ssl=False)
        v2 = v1.model_copy(update={"port": 3001})

        first = await nginx.write_route(v1)
        second = await nginx.write_route(v2)
        path = nginx.route_path("shop")

        assert first.previous is None
        assert second.previous is not None and "localhost:3000" in second.previous
        assert "localhost:3001" in path.read_text()

        restored = await nginx.restore_route("shop", second.previous)
        assert restored.success
        assert "localhost:3000" in path.read_text()

        dropped = await nginx.restore_route("shop", None)
        assert dropped.success
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_reload(self, nginx: NginxConfigurator) -> None:
        assert (await nginx.reload()).success is True

    @pytest.mark.asyncio
    async def test_reload_failure(self, tmp_path: Path) -> None:
        nginx = NginxConfigurator(
            ProxyConfig(
                config_dir=tmp_path / "conf.d",
                reload_command=["unideploy-test-missing-binary"],
            )
        )
        nginx._run = _fake_run_all_fail

        result = await nginx.reload()

        assert result.success is False
        assert result.error is not None
        assert "Proxy reload failed" in result.error.message


async def _fake_run_all_fail(command: list[str]) -> tuple[bool, str]:
    return False, f"{command[0]} not found"


class _WritingProvider:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def ensure_certificate(self, server_name: str, email: str, paths: CertificatePaths) -> bool:
        self.calls.append((server_name, email))
        paths.fullchain.write_text("cert")
        paths.private_key.write_text("key")
        return True


class _FailingProvider:
    async def ensure_certificate(self, server_name: str, email: str, paths: CertificatePaths) -> bool:
        raise RuntimeError("acme unavailable")


class TestCertificateManager:
    @pytest.mark.parametrize(
        "server_name, expected",
        [
            ("example.com", "DNS:example.com,DNS:www.example.com"),
            ("www.example.com", "DNS:www.example.com"),
            ("*.example.com", "DNS:*.example.com,DNS:example.com,DNS:www.example.com"),
        ],
    )
    def test_subject_alt_names(self, server_name: str, expected: str) -> None:
        assert subject_alt_names(server_name) == expected

    @pytest.mark.asyncio
    async def test_existing_certificate_is_reused(self, tmp_path: Path) -> None:
        provider = _WritingProvider()
        manager = CertificateManager(ProxyConfig(certs_dir=tmp_path), provider)
        paths = manager.paths("example.com")
        paths.directory.mkdir(parents=True)
        paths.fullchain.write_text("cert")
        paths.private_key.write_text("key")

        result = await manager.ensure("example.com")

        assert result.success is True
        assert result.source == "existing"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_first(self, tmp_path: Path) -> None:
        provider = _WritingProvider()
        manager = CertificateManager(ProxyConfig(certs_dir=tmp_path), provider)

        result = await manager.ensure("example.com", email="ops@example.com")

        assert result.success is True
        assert result.source == "provider"
        assert provider.calls == [("example.com", "ops@example.com")]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_self_signed(self, tmp_path: Path) -> None:
        manager = CertificateManager(ProxyConfig(certs_dir=tmp_path), _FailingProvider())
        fallback = CertificateResult(
            success=True,
            server_name="example.com",
            paths=manager.paths("example.com"),
            source="self_signed",
        )
        manager.generate_self_signed = AsyncMock(return_value=fallback)

        result = await manager.ensure("example.com")

        assert result.source == "self_signed"
        manager.generate_self_signed.assert_awaited_once()
