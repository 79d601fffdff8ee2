"""Tests for configuration loading, logging setup and root generation."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from cryptography import x509

import generate_certs
from tlsmitm.config import CertPaths, ProxyConfig, build_parser, load_config
from tlsmitm.errors import ConfigError
from tlsmitm.log import TRACE, get_logger, parse_level, setup_logging


def _load(argv: list[str]) -> tuple[ProxyConfig, str]:
    return load_config(build_parser().parse_args(argv))


class TestCertPaths:
    def test_layout(self, tmp_path: Path) -> None:
        paths = CertPaths.under(tmp_path)
        assert paths.key_file == tmp_path.resolve() / "certGen" / "cert.key"
        assert paths.script == tmp_path.resolve() / "certGen" / "gen_cert.sh"
        assert paths.ca_cert_file.name == "ca.crt"
        assert paths.cert_file("example.com") == tmp_path.resolve() / "certs" / "example.com.crt"


class TestProxyConfig:
    def test_defaults(self) -> None:
        config = ProxyConfig()
        assert (config.host, config.port) == ("127.0.0.1", 8080)
        assert config.verify_ssl
        assert config.connect_timeout is None and config.io_timeout is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"issuer": "openssl"},
            {"port": 70000},
            {"connect_timeout": 0},
            {"io_timeout": -1.0},
            {"max_line_size": 0},
        ],
    )
    def test_rejects_bad_values(self, kwargs: dict) -> None:
        with pytest.raises(ConfigError):
            ProxyConfig(**kwargs)


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        config, level = _load(["--workdir", str(tmp_path)])
        assert config.port == 8080
        assert config.paths.root_dir == tmp_path.resolve() / "certGen"
        assert level == "INFO"

    def test_ini_values(self, tmp_path: Path) -> None:
        ini = tmp_path / "proxy.ini"
        ini.write_text(
            "[proxy]\n"
            "port = 9090\n"
            "issuer = local\n"
            "verify_ssl = no\n"
            "io_timeout = 2.5\n"
            "connect_timeout = none\n"
            "max_body_size = 1024\n"
            "log_level = DEBUG\n"
            f"workdir = {tmp_path}\n"
        )
        config, level = _load(["-c", str(ini)])

        assert config.port == 9090
        assert config.issuer == "local"
        assert not config.verify_ssl
        assert config.io_timeout == 2.5
        assert config.connect_timeout is None
        assert config.max_body_size == 1024
        assert level == "DEBUG"

    def test_cli_overrides_ini(self, tmp_path: Path) -> None:
        ini = tmp_path / "proxy.ini"
        ini.write_text("[proxy]\nport = 9090\nissuer = local\nlog_level = DEBUG\n")

        config, level = _load(["-c", str(ini), "--port", "7070", "--issuer", "script", "--log-level", "TRACE"])

        assert config.port == 7070
        assert config.issuer == "script"
        assert level == "TRACE"

    def test_no_verify_flag(self) -> None:
        config, _ = _load(["--no-verify"])
        assert not config.verify_ssl

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            _load(["-c", str(tmp_path / "absent.ini")])

    def test_bad_value(self, tmp_path: Path) -> None:
        ini = tmp_path / "proxy.ini"
        ini.write_text("[proxy]\nport = eighty\n")
        with pytest.raises(ConfigError):
            _load(["-c", str(ini)])


class TestLogging:
    def test_trace_level(self) -> None:
        assert parse_level("trace") == TRACE
        assert parse_level("Warning") == logging.WARNING
        assert parse_level(logging.DEBUG) == logging.DEBUG
        with pytest.raises(ValueError):
            parse_level("chatty")

    def test_setup_is_repeatable(self) -> None:
        root = setup_logging("DEBUG")
        setup_logging("TRACE")
        assert len(root.handlers) == 1
        assert root.level == TRACE
        assert not root.propagate
        assert hasattr(get_logger("tlsmitm.session"), "trace")


class TestGenerateCerts:
    def test_writes_root_material(self, tmp_path: Path) -> None:
        assert generate_certs.main(["--dir", str(tmp_path), "--ca-name", "unit CA"]) == 0

        ca = x509.load_pem_x509_certificate((tmp_path / "ca.crt").read_bytes())
        assert ca.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
        assert (tmp_path / "ca.key").is_file()
        assert (tmp_path / "cert.key").is_file()

    def test_keeps_existing_root_without_force(self, tmp_path: Path) -> None:
        generate_certs.main(["--dir", str(tmp_path)])
        before = (tmp_path / "ca.crt").read_bytes()

        assert generate_certs.main(["--dir", str(tmp_path)]) != 0
        assert (tmp_path / "ca.crt").read_bytes() == before

        assert generate_certs.main(["--dir", str(tmp_path), "--force"]) == 0
        assert (tmp_path / "ca.crt").read_bytes() != before
