"""Tests for settings validation."""
import pytest

from dealfinder.config import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.requests_per_second == 7.0
        assert settings.free_signal_limit == 3
        assert settings.free_signal_reset_policy == "lifetime"

    def test_prod_requires_real_database(self):
        with pytest.raises(ValueError):
            Settings(env="prod", database_url="sqlite:///./data/dealfinder.db")

    def test_prod_with_postgres(self):
        settings = Settings(env="prod", database_url="postgresql://u:p@db/deals")
        assert settings.env == "prod"

    @pytest.mark.parametrize("rps", [0, -1])
    def test_requests_per_second_must_be_positive(self, rps):
        with pytest.raises(ValueError):
            Settings(requests_per_second=rps)

    def test_route_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(route_batch_size=0)

    def test_reset_policy_is_validated(self):
        with pytest.raises(ValueError):
            Settings(free_signal_reset_policy="weekly")
