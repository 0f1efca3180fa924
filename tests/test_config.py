"""
Tests for client configuration loading.
"""

import os
from unittest.mock import patch

import pytest

from ciam_shared.exceptions import ConfigurationError
from ciam_client.config import ClientConfiguration


@pytest.fixture
def config_path(storage_dir):
    return os.path.join(storage_dir, 'client.conf')


class TestClientConfiguration:
    """Tests for ClientConfiguration."""

    def test_default_file_created(self, config_path):
        config = ClientConfiguration(config_path)

        assert os.path.exists(config_path)
        assert config.get_identity_url() == 'http://localhost:8080'
        assert config.get_login_retry_attempts() == 2
        assert config.get_refresh_retry_attempts() == 3
        assert config.get_poll_retry_attempts() == 1
        assert config.get_poll_interval() == 2.0
        assert config.get_invalid_proof_reset_delay() == 2.0
        assert config.is_auto_refresh_enabled() is True

    def test_missing_file_not_created(self, config_path):
        config = ClientConfiguration(config_path, create_if_missing=False)

        assert not os.path.exists(config_path)
        assert config.get_timeout() == 30.0

    def test_file_values(self, config_path):
        with open(config_path, 'w') as f:
            f.write(
                "[identity]\n"
                "url = https://id.example.com/\n"
                "timeout = 10\n"
                "[session]\n"
                "poll_interval = 0.5\n"
                "auto_refresh = false\n"
                "[storage]\n"
                "directory = /var/lib/ciam\n"
            )

        config = ClientConfiguration(config_path)

        assert config.get_identity_url() == 'https://id.example.com'
        assert config.get_timeout() == 10.0
        assert config.get_poll_interval() == 0.5
        assert config.is_auto_refresh_enabled() is False
        assert config.get_storage_dir() == '/var/lib/ciam'
        # defaults fill what the file leaves out
        assert config.get_refresh_threshold() == 60

    def test_environment_overrides_file(self, config_path):
        with open(config_path, 'w') as f:
            f.write("[identity]\nurl = https://file.example.com\n")

        env = {
            'CIAM_IDENTITY_URL': 'https://env.example.com',
            'CIAM_LOGIN_RETRY_ATTEMPTS': '4',
            'CIAM_POLL_INTERVAL': '1.5',
            'CIAM_AUTO_REFRESH': 'false',
        }
        with patch.dict(os.environ, env):
            config = ClientConfiguration(config_path)

        assert config.get_identity_url() == 'https://env.example.com'
        assert config.get_login_retry_attempts() == 4
        assert config.get_poll_interval() == 1.5
        assert config.is_auto_refresh_enabled() is False

    def test_override_has_highest_priority(self, config_path):
        with patch.dict(os.environ, {'CIAM_IDENTITY_URL': 'https://env.example.com'}):
            config = ClientConfiguration(config_path)
        config.set_override('identity.url', 'https://cli.example.com')

        assert config.get_identity_url() == 'https://cli.example.com'

    def test_invalid_number(self, config_path):
        config = ClientConfiguration(config_path)
        config.set_config('session.poll_interval', 'often')

        with pytest.raises(ConfigurationError) as exc_info:
            config.get_poll_interval()

        assert exc_info.value.context['config_key'] == 'session.poll_interval'

    def test_attempts_below_minimum(self, config_path):
        config = ClientConfiguration(config_path)
        config.set_config('identity.refresh_retry_attempts', 0)

        with pytest.raises(ConfigurationError):
            config.get_refresh_retry_attempts()

    def test_save_and_reload(self, config_path):
        config = ClientConfiguration(config_path)
        config.set_config('session.poll_interval', 3.5)
        config.set_config('session.auto_refresh', False)
        config.save_configuration()

        reloaded = ClientConfiguration(config_path)

        assert reloaded.get_poll_interval() == 3.5
        assert reloaded.is_auto_refresh_enabled() is False
