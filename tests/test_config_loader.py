"""Tests for service and renewal configuration."""

from pathlib import Path

import pytest

from edgecert.config_loader import (
    ConfigurationError,
    Settings,
    build_acme_environment,
    derive_domains,
    load_config,
    resolve_renewal_config,
    validate_renewal_config,
    validate_renewal_options,
)


PLATFORM_ENV = {
    "C8Y_BASEURL": "https://tenant.example.com/",
    "C8Y_TENANT": "t100",
    "C8Y_USER": "service-user",
    "C8Y_PASSWORD": "secret",
    "APPLICATION_NAME": "acme",
    "APPLICATION_KEY": "app-key",
}


@pytest.fixture
def platform_env(monkeypatch):
    for key, value in PLATFORM_ENV.items():
        monkeypatch.setenv(key, value)


def write_yaml(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    def test_from_environment(self, platform_env):
        config = load_config()

        assert config.platform.base_url == "https://tenant.example.com"
        assert config.platform.username == "t100/service-user"
        assert config.platform.application_key == "app-key"
        assert config.settings == Settings()

    def test_environment_missing_values(self, monkeypatch):
        for key in PLATFORM_ENV:
            monkeypatch.delenv(key, raising=False)

        with pytest.raises(ConfigurationError, match="base_url"):
            load_config()

    def test_yaml_with_env_expansion(self, tmp_path, platform_env):
        path = write_yaml(tmp_path, """
platform:
  base_url: ${C8Y_BASEURL}
  tenant: ${C8Y_TENANT}
  user: ${C8Y_USER}
  password: ${C8Y_PASSWORD}
  application_name: acme
settings:
  base_path: /data
  poll_attempts: 5
""")
        config = load_config(path)

        assert config.platform.password == "secret"
        assert config.platform.application_key is None
        assert config.settings.poll_attempts == 5
        assert config.settings.state_dir == Path("/data/.acme.sh")
        assert config.settings.archive_path == Path("/data/acme.sh.tar.gz.enc")

    def test_unresolved_reference_counts_as_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("UNSET_PASSWORD", raising=False)
        path = write_yaml(tmp_path, """
platform:
  base_url: https://tenant.example.com
  tenant: t100
  user: service-user
  password: ${UNSET_PASSWORD}
  application_name: acme
""")
        with pytest.raises(ConfigurationError, match="password"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_missing_platform_section(self, tmp_path):
        path = write_yaml(tmp_path, "settings:\n  base_path: /data\n")
        with pytest.raises(ConfigurationError, match="platform"):
            load_config(path)

    def test_invalid_base_url(self, tmp_path):
        path = write_yaml(tmp_path, """
platform:
  base_url: tenant.example.com
  tenant: t100
  user: service-user
  password: secret
  application_name: acme
""")
        with pytest.raises(ConfigurationError, match="http"):
            load_config(path)

    def test_invalid_setting(self, tmp_path):
        path = write_yaml(tmp_path, """
platform:
  base_url: https://tenant.example.com
  tenant: t100
  user: service-user
  password: secret
  application_name: acme
settings:
  poll_attempts: many
""")
        with pytest.raises(ConfigurationError, match="Invalid settings"):
            load_config(path)


class TestDeriveDomains:
    def test_plain(self):
        assert derive_domains("edge.example.com", {}) == ("edge.example.com",)

    def test_wildcard_sub(self):
        assert derive_domains("edge.example.com", {"add_wildcard_sub": "true"}) == (
            "edge.example.com",
            "*.edge.example.com",
        )

    def test_wildcard_main(self):
        assert derive_domains("edge.example.com", {"add_wildcard_main": "true"}) == (
            "*.example.com",
        )

    def test_both_wildcards(self):
        options = {"add_wildcard_sub": "true", "add_wildcard_main": "true"}
        assert derive_domains("edge.example.com", options) == (
            "*.example.com",
            "*.edge.example.com",
        )

    def test_only_literal_true_enables(self):
        assert derive_domains("edge.example.com", {"add_wildcard_sub": "yes"}) == (
            "edge.example.com",
        )


class TestBuildAcmeEnvironment:
    def test_service_options_are_excluded(self):
        options = {
            "dns_provider": "dns_cf",
            "domain": "edge.example.com",
            "mail": "ops@example.com",
            "archive_encryption_key": "k",
            "credentials.archive_encryption_key": "k",
            "CF_Token": "cf-token",
            "CF_Account_ID": "account",
        }

        assert build_acme_environment(options) == {
            "CF_Token": "cf-token",
            "CF_Account_ID": "account",
        }


class TestResolveRenewalConfig:
    def test_defaults(self, settings):
        config = resolve_renewal_config({"domain": "edge.example.com"}, settings)

        assert config.acme_server == "letsencrypt_test"
        assert config.renew_threshold_days == 20
        assert config.dns_sleep_seconds == 0
        assert config.dns_provider is None
        assert not config.skip_remote_deployment
        assert not config.allow_insecure_tls

    def test_file_layout(self, renewal_config, settings):
        cert_dir = settings.state_dir / "edge.example.com"

        assert renewal_config.files["cert"].path == cert_dir / "edge.example.com.cer"
        assert renewal_config.files["cert"].upload_name == "edge.example.com.crt"
        assert renewal_config.files["cert_fullchain"].path == cert_dir / "fullchain.cer"
        assert renewal_config.files["cert_fullchain"].upload_name == "edge.example.com-fullchain.crt"
        assert renewal_config.files["key"].path == cert_dir / "edge.example.com.key"

    def test_options(self, settings):
        options = {
            "domain": "edge.example.com",
            "dns_provider": "dns_cf",
            "server": "zerossl",
            "renew_days_before_expiry": "30",
            "skip_cert_replacement": "true",
            "insecure": "true",
            "debug": "true",
            "edge_ip": "10.0.0.5",
            "mail": "ops@example.com",
            "challenge_alias": "alias.example.net",
            "dnssleep": "120",
        }
        config = resolve_renewal_config(options, settings)

        assert config.acme_server == "zerossl"
        assert config.renew_threshold_days == 30
        assert config.skip_remote_deployment
        assert config.allow_insecure_tls
        assert config.debug
        assert config.edge_target_override == "10.0.0.5"
        assert config.contact_mail == "ops@example.com"
        assert config.challenge_alias == "alias.example.net"
        assert config.dns_sleep_seconds == 120
        assert config.environment == {}

    def test_fallback_domain(self, settings):
        config = resolve_renewal_config({}, settings, fallback_domain="tenant.example.com")
        assert config.primary_domain == "tenant.example.com"

    def test_no_domain(self, settings):
        with pytest.raises(ConfigurationError, match="No domain"):
            resolve_renewal_config({"dns_provider": "dns_cf"}, settings)

    def test_invalid_renew_days(self, settings):
        options = {"domain": "edge.example.com", "renew_days_before_expiry": "soon"}
        with pytest.raises(ConfigurationError, match="renew_days_before_expiry"):
            resolve_renewal_config(options, settings)

    def test_invalid_dnssleep_falls_back_to_zero(self, settings):
        options = {"domain": "edge.example.com", "dnssleep": "later"}
        assert resolve_renewal_config(options, settings).dns_sleep_seconds == 0


class TestValidateRenewalConfig:
    def test_valid(self, renewal_config):
        validate_renewal_config(renewal_config)

    def test_missing_dns_provider(self, settings):
        config = resolve_renewal_config({"domain": "edge.example.com"}, settings)

        with pytest.raises(ConfigurationError, match="invalid/incomplete"):
            validate_renewal_config(config)


def test_validate_renewal_options():
    validate_renewal_options({"dns_provider": "dns_cf"})

    with pytest.raises(ConfigurationError, match="invalid/incomplete"):
        validate_renewal_options({"domain": "edge.example.com"})
