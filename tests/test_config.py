import sys
sys.path.insert(0, '.')

import pytest

from config import Config, ConfigurationError, load_settings
from config.config_loader import DEFAULT_CONFIG_PATH
from config.settings import is_placeholder
from tests.sniper_fakes import settings_dict


def test_default_config_loads():
    settings = load_settings(Config(str(DEFAULT_CONFIG_PATH)))
    assert settings.detector.threshold == 18.0
    assert settings.detector.buffer == 0.5
    assert settings.detector.confirmation_window == 3
    assert settings.trading.default_strategy == 'aggressive'
    aggressive = settings.trading.strategy
    assert aggressive.partial_sell_ladder == (25.0, 50.0, 75.0)
    assert aggressive.enable_partial_sells
    assert not settings.trading.strategies['conservative'].enable_partial_sells
    assert settings.risk.failed_exit_levels == {'medium': 1, 'high': 2, 'critical': 3}
    assert settings.events.overflow_policy == 'drop_oldest'
    assert settings.shutdown_grace_s == 5.0


def test_env_references_resolve(monkeypatch, tmp_path):
    path = tmp_path / 'sniper.yaml'
    path.write_text(
        "market_data:\n"
        "  base_url: ${TEST_VALUATION_URL}\n"
        "  assets: ['${TEST_ASSET}', plain]\n"
        "gateway:\n"
        "  api_key: ${TEST_UNSET_KEY}\n"
    )
    monkeypatch.setenv('TEST_VALUATION_URL', 'http://valuation.local')
    monkeypatch.setenv('TEST_ASSET', 'tok')
    monkeypatch.delenv('TEST_UNSET_KEY', raising=False)
    cfg = Config(str(path))
    assert cfg.market_data.base_url == 'http://valuation.local'
    assert cfg.get('market_data')['assets'] == ['tok', 'plain']
    assert is_placeholder(cfg.gateway.get('api_key'))


def test_missing_or_malformed_file(tmp_path):
    with pytest.raises(ConfigurationError):
        Config(str(tmp_path / 'absent.yaml'))
    bad = tmp_path / 'bad.yaml'
    bad.write_text("detector: [unclosed\n")
    with pytest.raises(ConfigurationError):
        Config(str(bad))
    scalar = tmp_path / 'scalar.yaml'
    scalar.write_text("just a string\n")
    with pytest.raises(ConfigurationError):
        Config(str(scalar))


@pytest.mark.parametrize('sections', [
    {'detector': {'buffer': 18.0}},
    {'detector': {'threshold': 0}},
    {'detector': {'confirmation_window': 0}},
    {'detector': {'retry_backoff_base_s': 5.0}},
    {'trading': {'default_strategy': 'missing'}},
    {'trading': {'strategies': {}}},
    {'trading': {'strategies': {'x': {'buy_amount': 0.1, 'sell_threshold': 50, 'stop_loss_threshold': 20,
                                      'max_hold_duration_s': 60, 'partial_sell_ladder': [50, 25]}},
                 'default_strategy': 'x'}},
    {'trading': {'max_exit_attempts': 0}},
    {'trading': {'paper_mode': 'sometimes'}},
    {'trading': {'paper': {'fee_rate': 1.5}}},
    {'risk': {'max_concurrent_trades': 0}},
    {'risk': {'drawdown_levels_pct': {'medium': 30, 'high': 20, 'critical': 50}}},
    {'events': {'overflow_policy': 'drop_newest'}},
])
def test_invalid_values_are_rejected(sections):
    with pytest.raises(ConfigurationError):
        load_settings(settings_dict(**sections))


def test_flags_accept_strings_and_placeholders():
    settings = load_settings(settings_dict(trading={'paper_mode': 'yes', 'enable_stop_losses': 'off'}))
    assert settings.trading.paper_mode is True
    assert settings.trading.enable_stop_losses is False
    unresolved = load_settings(settings_dict(trading={'paper_mode': '${PAPER_MODE}'}))
    assert unresolved.trading.paper_mode is True
