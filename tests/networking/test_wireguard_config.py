"""
WireGuard Configuration Rendering Tests

Tests client and node interface configuration validation and wg-quick
file output.
"""

import pytest
from pydantic import ValidationError

from nexusfleet.networking.wireguard_config import (
    NAT_POST_UP,
    ClientConfig,
    NodeInterfaceConfig,
)
from nexusfleet.networking.wireguard_keys import generate_keypair


@pytest.fixture
def client_private_key():
    private_key, _ = generate_keypair()
    return private_key


class TestClientConfig:
    """Test client device configuration"""

    def test_renders_full_tunnel_config(self, client_private_key):
        """
        GIVEN a client config with default DNS, MTU and keepalive
        WHEN rendering to wg-quick format
        THEN every line should appear in order with a trailing newline
        """
        config = ClientConfig(
            private_key=client_private_key,
            address="10.100.0.2/32",
            server_public_key="ServerKey=",
            endpoint="203.0.113.10:51820",
        )

        assert config.to_config_file() == (
            "[Interface]\n"
            f"PrivateKey = {client_private_key}\n"
            "Address = 10.100.0.2/32\n"
            "DNS = 1.1.1.1\n"
            "MTU = 1420\n"
            "\n"
            "[Peer]\n"
            "PublicKey = ServerKey=\n"
            "AllowedIPs = 0.0.0.0/0, ::/0\n"
            "Endpoint = 203.0.113.10:51820\n"
            "PersistentKeepalive = 25\n"
        )

    def test_overrides_dns_and_mtu(self, client_private_key):
        config = ClientConfig(
            private_key=client_private_key,
            address="10.100.0.7/32",
            dns="9.9.9.9",
            mtu=1380,
            server_public_key="ServerKey=",
            endpoint="vpn.example.com:51820",
        ).to_config_file()

        assert "DNS = 9.9.9.9\n" in config
        assert "MTU = 1380\n" in config

    def test_keepalive_zero_omits_line(self, client_private_key):
        config = ClientConfig(
            private_key=client_private_key,
            address="10.100.0.2/32",
            server_public_key="ServerKey=",
            endpoint="203.0.113.10:51820",
            persistent_keepalive=0,
        ).to_config_file()

        assert "PersistentKeepalive" not in config

    def test_rejects_short_private_key(self):
        """
        GIVEN a private key that is not 44 characters
        WHEN constructing ClientConfig
        THEN should raise ValidationError
        """
        with pytest.raises(ValidationError, match="44 characters"):
            ClientConfig(
                private_key="short",
                address="10.100.0.2/32",
                server_public_key="ServerKey=",
                endpoint="203.0.113.10:51820",
            )

    @pytest.mark.parametrize("address", ["10.100.0.2", "10.100.0.300/32", "10.100.0.2/40"])
    def test_rejects_bad_address(self, client_private_key, address):
        with pytest.raises(ValidationError):
            ClientConfig(
                private_key=client_private_key,
                address=address,
                server_public_key="ServerKey=",
                endpoint="203.0.113.10:51820",
            )

    @pytest.mark.parametrize("mtu", [1279, 1501])
    def test_rejects_mtu_out_of_range(self, client_private_key, mtu):
        with pytest.raises(ValidationError):
            ClientConfig(
                private_key=client_private_key,
                address="10.100.0.2/32",
                mtu=mtu,
                server_public_key="ServerKey=",
                endpoint="203.0.113.10:51820",
            )


class TestNodeInterfaceConfig:
    """Test server-side wg0 configuration"""

    def test_renders_with_nat_rules(self):
        config = NodeInterfaceConfig(private_key="NodePrivateKey=", listen_port=51999).to_config_file()

        assert config.startswith("[Interface]\nPrivateKey = NodePrivateKey=\n")
        assert "Address = 10.100.0.1/24\n" in config
        assert "ListenPort = 51999\n" in config
        assert f"PostUp = {NAT_POST_UP}\n" in config
        assert "PostDown = " in config
        assert config.endswith("\n")

    def test_renders_without_nat_rules(self):
        config = NodeInterfaceConfig(
            private_key="NodePrivateKey=",
            post_up=None,
            post_down=None,
        ).to_config_file()

        assert "PostUp" not in config
        assert "PostDown" not in config
        assert "ListenPort = 51820\n" in config
