"""
Unit tests for services.common.configs.

Tests:
- Per-network defaults
- NetworksConfig lookup helpers
- Timeout bounds
"""

import pytest
from pydantic import ValidationError

from relaysync.models import NetworkType
from relaysync.services.common.configs import (
    ClearnetConfig,
    I2pConfig,
    LokiConfig,
    NetworksConfig,
    TorConfig,
)


class TestNetworkDefaults:
    """Defaults of the per-network config classes."""

    def test_clearnet(self):
        config = ClearnetConfig()
        assert config.enabled is True
        assert config.proxy_url is None
        assert config.request_timeout == 30.0
        assert config.relay_timeout == 1800.0

    def test_tor(self):
        config = TorConfig()
        assert config.enabled is True
        assert config.proxy_url == "socks5://127.0.0.1:9050"
        assert config.request_timeout == 60.0
        assert config.relay_timeout == 3600.0

    def test_overlay_networks_disabled(self):
        assert I2pConfig().enabled is False
        assert I2pConfig().proxy_url == "socks5://127.0.0.1:4447"
        assert LokiConfig().enabled is False
        assert LokiConfig().proxy_url == "socks5://127.0.0.1:1080"

    @pytest.mark.parametrize("value", [4.9, 120.1])
    def test_request_timeout_bounds(self, value):
        with pytest.raises(ValidationError):
            ClearnetConfig(request_timeout=value)

    @pytest.mark.parametrize("value", [59.0, 14_401.0])
    def test_relay_timeout_bounds(self, value):
        with pytest.raises(ValidationError):
            TorConfig(relay_timeout=value)


class TestNetworksConfig:
    """NetworksConfig helpers."""

    def test_get(self):
        config = NetworksConfig()
        assert config.get(NetworkType.TOR) is config.tor
        assert config.get(NetworkType.CLEARNET) is config.clearnet

    def test_get_unknown_falls_back_to_clearnet(self):
        config = NetworksConfig()
        assert config.get(NetworkType.UNKNOWN) is config.clearnet

    def test_proxy_url_clearnet_is_none(self):
        config = NetworksConfig(clearnet=ClearnetConfig(proxy_url="socks5://proxy:1080"))
        assert config.get_proxy_url(NetworkType.CLEARNET) is None

    def test_proxy_url_enabled_network(self):
        config = NetworksConfig(tor=TorConfig(proxy_url="socks5://tor:9050"))
        assert config.get_proxy_url(NetworkType.TOR) == "socks5://tor:9050"

    def test_proxy_url_disabled_network(self):
        assert NetworksConfig().get_proxy_url(NetworkType.I2P) is None

    def test_is_enabled(self):
        config = NetworksConfig(loki=LokiConfig(enabled=True))
        assert config.is_enabled(NetworkType.CLEARNET)
        assert config.is_enabled(NetworkType.LOKI)
        assert not config.is_enabled(NetworkType.I2P)

    def test_enabled_networks_default(self):
        assert NetworksConfig().get_enabled_networks() == ["clearnet", "tor"]

    def test_enabled_networks_order(self):
        config = NetworksConfig(
            clearnet=ClearnetConfig(enabled=False), i2p=I2pConfig(enabled=True)
        )
        assert config.get_enabled_networks() == ["tor", "i2p"]

    def test_partial_dict_keeps_defaults(self):
        config = NetworksConfig.model_validate({"tor": {"enabled": False}})
        assert config.tor.proxy_url == "socks5://127.0.0.1:9050"
        assert config.clearnet.enabled is True
        assert config.get_enabled_networks() == ["clearnet"]
