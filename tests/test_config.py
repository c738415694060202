"""
Tests for configuration system.
"""

from pathlib import Path

from common.config import Config, load_config


def test_config_creation():
    """Test basic Config creation."""
    config = Config()

    assert config.gateway is not None
    assert config.router is not None
    assert config.providers is not None


def test_config_defaults_are_reasonable():
    """Test default values for the gateway and router."""
    config = Config()

    assert config.gateway.max_upload_size == 20 * 1024 * 1024
    assert config.gateway.disconnect_poll_interval > 0
    assert config.router.default_model == "gemini-1.5-flash"
    assert config.router.citation_prefix == "sonar"


def test_provider_defaults():
    """Test per-backend defaults."""
    providers = Config().providers

    assert providers.openrouter.idle_timeout == 30
    assert providers.together.idle_timeout == 30
    assert providers.perplexity.models == {"sonar": 4096, "sonar-pro": 8192}
    assert providers.perplexity.base_url == "https://api.perplexity.ai"
    assert providers.together.image_steps == 4
    assert providers.replicate.bagel_version.startswith("7dd8def7")
    assert providers.replicate.bagel_input["output_format"] == "webp"
    assert providers.gemini.enable_search_grounding is False


def test_config_yaml_file_exists():
    """Test that config.yaml file exists."""
    config_path = Path("config.yaml")
    assert config_path.exists(), "config.yaml file should exist in the project root"


def test_load_config_missing_file_uses_defaults(tmp_path: Path):
    """A missing config file gives an all-defaults Config."""
    config = load_config(tmp_path / "nope.yaml")

    assert config == Config()


def test_load_config_flattens_logging_block(tmp_path: Path):
    """The nested logging block maps onto top-level log fields."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "logging:\n"
        "  level: DEBUG\n"
        "  enable_pretty_print: true\n"
        "  backup_count: 2\n"
        "gateway:\n"
        "  port: 9001\n"
        "providers:\n"
        "  openrouter:\n"
        "    idle_timeout: 5\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.log_level == "DEBUG"
    assert config.enable_pretty_print is True
    assert config.backup_count == 2
    assert config.gateway.port == 9001
    assert config.providers.openrouter.idle_timeout == 5
    # Untouched sections keep their defaults
    assert config.providers.openrouter.base_url == "https://openrouter.ai/api/v1"


def test_repository_config_loads():
    """The shipped config.yaml is valid."""
    config = load_config(Path("config.yaml"))

    assert config.router.default_model == "gemini-1.5-flash"
    assert config.providers.perplexity.models["sonar-pro"] == 8192
