"""
Unit tests for simulation configuration

Tests cover:
- Default configuration is valid
- Cross-field validation rejects inconsistent settings
- Tariff routes name known regions and carry rates in [0,1]
"""

import pytest

from config import (
    CONFIG,
    SEGMENTS,
    ESGConfig,
    MarketConfig,
    OperationsConfig,
    RubberBandConfig,
    SimulationConfig,
)


class TestSimulationConfig:
    """Test suite for SimulationConfig validation"""

    def test_defaults(self):
        config = SimulationConfig()

        assert config.market.softmax_temperature == 10.0
        assert config.rubber_band.start_round == 3
        assert config.esg.penalty_threshold == 300.0

    def test_weights_sum_to_one_hundred(self):
        for segment in SEGMENTS:
            assert sum(CONFIG.market.segment_weights[segment].values()) == 100

    def test_rejects_non_positive_temperature(self):
        with pytest.raises(ValueError):
            SimulationConfig(market=MarketConfig(softmax_temperature=0))

    def test_rejects_bad_weight_sum(self):
        market = MarketConfig()
        market.segment_weights["Budget"]["price"] = 70
        with pytest.raises(ValueError):
            SimulationConfig(market=market)

    def test_rejects_missing_weight_key(self):
        market = MarketConfig()
        del market.segment_weights["General"]["esg"]
        with pytest.raises(ValueError):
            SimulationConfig(market=market)

    def test_rejects_boost_below_one(self):
        with pytest.raises(ValueError):
            SimulationConfig(rubber_band=RubberBandConfig(trailing_boost=0.9))

    def test_rejects_penalty_above_one(self):
        with pytest.raises(ValueError):
            SimulationConfig(rubber_band=RubberBandConfig(leading_penalty=1.1))

    def test_rejects_inverted_esg_rates(self):
        with pytest.raises(ValueError):
            SimulationConfig(esg=ESGConfig(penalty_min=0.1, penalty_max=0.05))

    def test_baseline_tariffs(self):
        assert CONFIG.operations.tariff_rates[("Asia", "North America")] == 0.25
        assert ("Europe", "Asia") not in CONFIG.operations.tariff_rates

    def test_rejects_unknown_tariff_region(self):
        with pytest.raises(ValueError):
            SimulationConfig(operations=OperationsConfig(tariff_rates={("Asia", "Africa"): 0.15}))

    def test_rejects_tariff_above_one(self):
        with pytest.raises(ValueError):
            SimulationConfig(operations=OperationsConfig(tariff_rates={("Asia", "Europe"): 1.5}))
