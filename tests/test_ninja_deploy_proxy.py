import tempfile
import unittest
from pathlib import Path
from unittest import mock

from ninja_deploy.config import AdminCredentials, Config, DatabaseCredentials
from ninja_deploy.log import Outcome
from ninja_deploy.proxy import (
    PortHolder,
    activate_site,
    ensure_nginx_main_config,
    issue_certificate,
    list_port_holders,
    render_nginx_baseline,
    render_site_config,
    restart_nginx,
    stop_port_holders,
    validate_and_reload,
    write_site_config,
)


def _cfg(td: str, **overrides) -> Config:
    kwargs = dict(
        database=DatabaseCredentials(password="dbpass", root_password="rootpass"),
        admin=AdminCredentials(email="admin@demo.test", password="adminpass"),
        domain="demo.test",
        install_dir=Path(td) / "invoiceninja",
        nginx_dir=Path(td) / "nginx",
        acme_webroot=Path(td) / "www",
    )
    kwargs.update(overrides)
    return Config(**kwargs)


class SiteConfigTests(unittest.TestCase):
    def test_render_site_config_proxies_to_loopback(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            content = render_site_config(cfg)
        self.assertIn("listen 80;", content)
        self.assertIn("server_name demo.test;", content)
        self.assertIn("proxy_pass http://127.0.0.1:9001;", content)
        self.assertIn("proxy_set_header Host $host;", content)
        self.assertIn("proxy_set_header X-Real-IP $remote_addr;", content)
        self.assertIn(
            "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;", content
        )
        self.assertIn("proxy_set_header X-Forwarded-Proto $scheme;", content)
        self.assertIn("location /.well-known/acme-challenge/ {", content)
        self.assertIn(f"root {Path(td) / 'www'};", content)

    def test_write_site_config_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.say"):
                self.assertTrue(write_site_config(cfg))
                self.assertFalse(write_site_config(cfg))
            self.assertTrue(cfg.nginx_site_available_path.exists())
            self.assertTrue(cfg.acme_webroot.is_dir())

    def test_activate_site_creates_symlink_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.say"):
                write_site_config(cfg)
            activate_site(cfg)
            activate_site(cfg)
            enabled = cfg.nginx_site_enabled_path
            self.assertTrue(enabled.is_symlink())
            self.assertEqual(enabled.resolve(), cfg.nginx_site_available_path.resolve())

    def test_activate_site_replaces_stale_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.say"):
                write_site_config(cfg)
            cfg.nginx_site_enabled_path.parent.mkdir(parents=True, exist_ok=True)
            cfg.nginx_site_enabled_path.write_text("stale", encoding="utf-8")
            activate_site(cfg)
            self.assertTrue(cfg.nginx_site_enabled_path.is_symlink())


class MainConfigTests(unittest.TestCase):
    def test_rebuilds_config_missing_sites_enabled(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            cfg.nginx_dir.mkdir(parents=True)
            cfg.nginx_main_config_path.write_text("events {}\nhttp {}\n", encoding="utf-8")
            with mock.patch("ninja_deploy.proxy.say"):
                self.assertTrue(ensure_nginx_main_config(cfg))
            self.assertEqual(
                cfg.nginx_main_config_path.read_text(encoding="utf-8"),
                render_nginx_baseline(cfg.nginx_dir),
            )
            backup = cfg.nginx_dir / "nginx.conf.bak"
            self.assertEqual(backup.read_text(encoding="utf-8"), "events {}\nhttp {}\n")

    def test_baseline_includes_sites_enabled_under_nginx_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.say"):
                ensure_nginx_main_config(cfg)
            content = cfg.nginx_main_config_path.read_text(encoding="utf-8")
            self.assertIn(f"include {cfg.nginx_dir}/sites-enabled/*;", content)
            self.assertIn(f"include {cfg.nginx_dir}/mime.types;", content)
            self.assertNotIn("/etc/nginx", content)
            self.assertEqual(
                cfg.nginx_site_enabled_path.parent,
                cfg.nginx_dir / "sites-enabled",
            )

    def test_default_baseline_targets_etc_nginx(self) -> None:
        content = render_nginx_baseline(Path("/etc/nginx"))
        self.assertIn("include /etc/nginx/sites-enabled/*;", content)
        self.assertIn("events { worker_connections 768; }", content)

    def test_keeps_conforming_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            cfg.nginx_dir.mkdir(parents=True)
            content = f"http {{\n    include {cfg.nginx_dir}/sites-enabled/*;\n}}\n"
            cfg.nginx_main_config_path.write_text(content, encoding="utf-8")
            self.assertFalse(ensure_nginx_main_config(cfg))
            self.assertEqual(cfg.nginx_main_config_path.read_text(encoding="utf-8"), content)

    def test_include_for_another_root_is_replaced(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            cfg.nginx_dir.mkdir(parents=True)
            cfg.nginx_main_config_path.write_text(
                "http {\n    include /srv/other/sites-enabled/*;\n}\n", encoding="utf-8"
            )
            with mock.patch("ninja_deploy.proxy.say"):
                self.assertTrue(ensure_nginx_main_config(cfg))


class NginxServiceTests(unittest.TestCase):
    def test_validation_failure_aborts_before_reload(self) -> None:
        with mock.patch("ninja_deploy.proxy.sh", return_value=1) as sh_mock:
            with self.assertRaises(SystemExit) as ctx:
                validate_and_reload()
        self.assertEqual(ctx.exception.code, 1)
        commands = [c[0][0] for c in sh_mock.call_args_list]
        self.assertEqual(commands, ["nginx -t"])

    def test_validation_success_reloads(self) -> None:
        with mock.patch("ninja_deploy.proxy.sh", return_value=0) as sh_mock:
            validate_and_reload()
        commands = [c[0][0] for c in sh_mock.call_args_list]
        self.assertEqual(commands, ["nginx -t", "systemctl reload nginx"])

    def test_restart_nginx_dies_when_inactive(self) -> None:
        with mock.patch("ninja_deploy.proxy.ensure", return_value=Outcome.SATISFIED), \
             mock.patch("ninja_deploy.proxy.sh", return_value=0), \
             mock.patch("ninja_deploy.proxy.probe", return_value=False), \
             mock.patch("ninja_deploy.proxy.time.sleep"), \
             mock.patch("ninja_deploy.proxy.die", side_effect=SystemExit(1)) as die_mock:
            with self.assertRaises(SystemExit):
                restart_nginx()
        self.assertIn("Nginx failed to start", die_mock.call_args[0][0])


class PortHolderTests(unittest.TestCase):
    def test_list_port_holders_parses_docker_ps(self) -> None:
        out = "abc123\tdebian-nginx-1\tdebian\ndef456\tother-web\t\n"
        with mock.patch("ninja_deploy.proxy.query", return_value=out) as query_mock:
            holders = list_port_holders()
        self.assertEqual(
            holders,
            [
                PortHolder("abc123", "debian-nginx-1", "debian"),
                PortHolder("def456", "other-web", ""),
            ],
        )
        self.assertIn("publish=80", query_mock.call_args[0][0])

    def test_foreign_holders_left_running_when_disabled(self) -> None:
        holders = [
            PortHolder("abc123", "debian-nginx-1", "debian"),
            PortHolder("def456", "other-web", "other"),
        ]
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td, stop_port_conflicts=False)
            with mock.patch("ninja_deploy.proxy.list_port_holders", return_value=holders), \
                 mock.patch("ninja_deploy.proxy.ensure", return_value=Outcome.CHANGED) as ensure_mock, \
                 mock.patch("ninja_deploy.proxy.warn"), \
                 mock.patch("ninja_deploy.proxy.time.sleep"):
                results = stop_port_holders(cfg)
        self.assertEqual(ensure_mock.call_count, 1)
        self.assertIn("docker stop abc123", ensure_mock.call_args[0][1])
        self.assertEqual(results["other-web"], Outcome.SATISFIED)
        self.assertEqual(results["debian-nginx-1"], Outcome.CHANGED)

    def test_all_holders_stopped_by_default(self) -> None:
        holders = [
            PortHolder("abc123", "debian-nginx-1", "debian"),
            PortHolder("def456", "other-web", "other"),
        ]
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.list_port_holders", return_value=holders), \
                 mock.patch("ninja_deploy.proxy.ensure", return_value=Outcome.CHANGED) as ensure_mock, \
                 mock.patch("ninja_deploy.proxy.warn") as warn_mock, \
                 mock.patch("ninja_deploy.proxy.time.sleep"):
                stop_port_holders(cfg)
        self.assertEqual(ensure_mock.call_count, 2)
        warn_mock.assert_called_once()

    def test_no_holders_is_a_no_op(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.list_port_holders", return_value=[]), \
                 mock.patch("ninja_deploy.proxy.ensure") as ensure_mock, \
                 mock.patch("ninja_deploy.proxy.say"), \
                 mock.patch("ninja_deploy.proxy.time.sleep") as sleep_mock:
                self.assertEqual(stop_port_holders(cfg), {})
        ensure_mock.assert_not_called()
        sleep_mock.assert_not_called()


class CertificateTests(unittest.TestCase):
    def test_failure_is_reported_not_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.sh", return_value=1) as sh_mock, \
                 mock.patch("ninja_deploy.proxy.say"), \
                 mock.patch("ninja_deploy.proxy.warn") as warn_mock:
                self.assertFalse(issue_certificate(cfg))
        cmd = sh_mock.call_args_list[0][0][0]
        self.assertIn("certbot --nginx -d demo.test", cmd)
        self.assertIn("--non-interactive --agree-tos", cmd)
        self.assertIn("-m admin@demo.test --redirect", cmd)
        self.assertEqual(sh_mock.call_count, 1)
        self.assertIn("/var/log/letsencrypt", warn_mock.call_args[0][0])

    def test_success_reloads_nginx(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(td)
            with mock.patch("ninja_deploy.proxy.sh", return_value=0) as sh_mock, \
                 mock.patch("ninja_deploy.proxy.say"):
                self.assertTrue(issue_certificate(cfg))
        commands = [c[0][0] for c in sh_mock.call_args_list]
        self.assertEqual(commands[-1], "systemctl reload nginx")


if __name__ == "__main__":
    unittest.main()
