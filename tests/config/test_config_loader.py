"""Configuration loading: packaged defaults, YAML overrides, validation."""

from decimal import Decimal

import pytest
import yaml

from apparel_config import CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH, get_active_config
from apparel_config.bridges import configure_kernel
from apparel_config.loader import compute_checksum, load_yaml_file, merge_documents, parse_config
from apparel_config.schema import AccountMapping, AccountRole, PostingPolicy
from apparel_kernel.domain.values import LedgerKind, ProductionStage
from apparel_kernel.services.stock_guard import get_stock_guard


@pytest.fixture
def override_file(tmp_path):
    def _write(document: dict):
        path = tmp_path / "override.yaml"
        path.write_text(yaml.safe_dump(document))
        return path

    return _write


class TestDefaults:

    def test_defaults_load(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = get_active_config()

        assert config.config_id == "apparel-default"
        assert config.version == 1
        assert config.policy.max_bom_depth == 10
        assert config.policy.receipt_tolerance_percent == Decimal("0")
        assert len(config.checksum) == 64

    def test_default_account_codes(self, config):
        accounts = config.accounts
        assert accounts.inventory(LedgerKind.RAW) == "1210"
        assert accounts.inventory(LedgerKind.FINISHED) == "1250"
        assert accounts.wip(ProductionStage.CUT) == "1221"
        assert accounts.wip(ProductionStage.SEW) == "1222"
        assert accounts.wip(ProductionStage.FINISH) == "1223"
        assert accounts.code(AccountRole.COST_OF_GOODS_SOLD) == "5010"
        assert accounts.code(AccountRole.PRODUCTION_LOSS) == "5050"
        assert accounts.code(AccountRole.APPLIED_OVERHEAD) == "5060"

    def test_wip_has_no_single_inventory_account(self, config):
        with pytest.raises(ValueError, match="No single inventory account"):
            config.accounts.inventory(LedgerKind.WIP)


class TestOverrides:

    def test_override_path_merges_over_defaults(self, override_file):
        path = override_file({
            "config_id": "acme-apparel",
            "accounts": {"COST_OF_GOODS_SOLD": "5011"},
            "policy": {"receipt_tolerance_percent": "5"},
        })

        config = get_active_config(path)

        assert config.config_id == "acme-apparel"
        assert config.accounts.code(AccountRole.COST_OF_GOODS_SOLD) == "5011"
        assert config.accounts.code(AccountRole.DEFERRED_COGS) == "1260"
        assert config.policy.receipt_tolerance_percent == Decimal("5")
        assert config.policy.max_bom_depth == 10

    def test_override_from_environment(self, monkeypatch, override_file):
        path = override_file({"version": 7})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert get_active_config().version == 7

    def test_missing_override_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_config_trace_logged(self, captured_logs, override_file):
        path = override_file({"version": 3})
        config = get_active_config(path)

        trace = next(r for r in captured_logs() if r["message"] == "APPAREL_CONFIG_TRACE")
        assert trace["config_version"] == 3
        assert trace["checksum"] == config.checksum
        assert trace["override"] == str(path)


class TestValidation:

    def test_unknown_role_rejected(self):
        data = load_yaml_file(DEFAULT_CONFIG_PATH)
        data["accounts"]["PETTY_CASH"] = "1005"

        with pytest.raises(ValueError, match="Unknown account role"):
            parse_config(data)

    def test_unbound_role_rejected(self):
        with pytest.raises(ValueError, match="without a code"):
            AccountMapping(bindings={AccountRole.COST_OF_GOODS_SOLD: "5010"})

    def test_missing_config_id(self):
        data = load_yaml_file(DEFAULT_CONFIG_PATH)
        del data["config_id"]

        with pytest.raises(KeyError):
            parse_config(data)

    @pytest.mark.parametrize("kwargs", [
        {"max_bom_depth": 0},
        {"lock_timeout_seconds": 0},
        {"receipt_tolerance_percent": Decimal("-1")},
    ])
    def test_policy_bounds(self, kwargs):
        with pytest.raises(ValueError):
            PostingPolicy(**kwargs)


class TestChecksum:

    def test_checksum_is_key_order_independent(self):
        assert compute_checksum({"a": 1, "b": {"c": 2}}) == compute_checksum({"b": {"c": 2}, "a": 1})

    def test_checksum_tracks_content(self):
        base = load_yaml_file(DEFAULT_CONFIG_PATH)
        changed = merge_documents(base, {"policy": {"max_bom_depth": 4}})

        assert parse_config(base).checksum != parse_config(changed).checksum
        assert base["policy"]["max_bom_depth"] == 10


class TestKernelBridge:

    def test_configure_kernel_installs_guard(self, override_file):
        config = get_active_config(override_file({"policy": {"lock_timeout_seconds": 2.5}}))

        guard = configure_kernel(config)

        assert guard.timeout_seconds == 2.5
        assert get_stock_guard() is guard
