import unittest

from novelctx.core.config import (
    IMPLEMENTATION_DEFAULTS,
    STRATEGY_DEFAULTS,
    Settings,
    _parse_bool,
    _parse_float,
    _parse_int,
    _resolve_profile,
    settings,
)
from novelctx.core.settings import CoreSettings, PolicySettings, RuntimeSettings
from novelctx.services.context_assembler import default_strategy, default_weights


class SettingsContractTestCase(unittest.TestCase):
    _MODULE_FIELD_NAMES: dict[str, tuple[str, ...]] = {
        "core": CoreSettings.FIELD_NAMES,
        "policy": PolicySettings.FIELD_NAMES,
        "runtime": RuntimeSettings.FIELD_NAMES,
    }
    _ALL_MAPPED_FIELD_NAMES: tuple[str, ...] = tuple(
        name
        for field_names in _MODULE_FIELD_NAMES.values()
        for name in field_names
    )
    _UNKNOWN_ATTR = "__settings_contract_unknown_field__"

    def setUp(self) -> None:
        self._snapshot = {
            name: getattr(settings, name)
            for name in self._ALL_MAPPED_FIELD_NAMES
        }

    def tearDown(self) -> None:
        for name, value in self._snapshot.items():
            setattr(settings, name, value)

        for module_name in self._MODULE_FIELD_NAMES.keys():
            module_proxy = getattr(settings, module_name)
            if hasattr(module_proxy, self._UNKNOWN_ATTR):
                delattr(module_proxy, self._UNKNOWN_ATTR)

    def test_field_name_mapping_covers_every_setting(self) -> None:
        declared_fields = {
            name
            for name, value in vars(Settings).items()
            if not name.startswith("_") and not callable(value)
        }
        mapped_fields = set(self._ALL_MAPPED_FIELD_NAMES)

        self.assertEqual(
            len(self._ALL_MAPPED_FIELD_NAMES),
            len(mapped_fields),
            "FIELD_NAMES contains duplicated entries across modules",
        )
        self.assertSetEqual(mapped_fields, declared_fields)

    def test_proxy_views_read_and_write_through_root(self) -> None:
        for module_name, field_names in self._MODULE_FIELD_NAMES.items():
            module_proxy = getattr(settings, module_name)
            for field_name in field_names:
                self.assertEqual(getattr(module_proxy, field_name), getattr(settings, field_name))

                from_root = object()
                setattr(settings, field_name, from_root)
                self.assertIs(getattr(module_proxy, field_name), from_root)

                from_proxy = object()
                setattr(module_proxy, field_name, from_proxy)
                self.assertIs(getattr(settings, field_name), from_proxy)

    def test_unknown_attribute_stays_on_proxy(self) -> None:
        for module_name in self._MODULE_FIELD_NAMES.keys():
            module_proxy = getattr(settings, module_name)
            with self.assertRaises(AttributeError):
                getattr(module_proxy, self._UNKNOWN_ATTR)

            marker = object()
            setattr(module_proxy, self._UNKNOWN_ATTR, marker)
            self.assertIs(getattr(module_proxy, self._UNKNOWN_ATTR), marker)
            self.assertFalse(hasattr(settings, self._UNKNOWN_ATTR))

    def test_profiles_share_the_same_keys(self) -> None:
        self.assertSetEqual(set(STRATEGY_DEFAULTS), set(IMPLEMENTATION_DEFAULTS))
        key_sets = {frozenset(values) for values in STRATEGY_DEFAULTS.values()}
        self.assertEqual(len(key_sets), 1)
        self.assertEqual(_resolve_profile("quality"), "quality-first")
        self.assertEqual(_resolve_profile("no-such-profile"), "local-dev")

    def test_parse_helpers_fall_back_on_garbage(self) -> None:
        self.assertTrue(_parse_bool(" Yes "))
        self.assertFalse(_parse_bool("nope", default=True))
        self.assertTrue(_parse_bool(None, default=True))
        self.assertEqual(_parse_float("abc", 0.5), 0.5)
        self.assertEqual(_parse_int("12", 3), 12)
        self.assertEqual(_parse_int("1.5", 3), 3)

    def test_default_strategy_is_built_fresh_from_settings(self) -> None:
        settings.context_max_tokens = 1234
        settings.context_min_character_mentions = 3
        first = default_strategy()
        self.assertEqual(first.max_tokens, 1234)
        self.assertEqual(first.min_character_mentions, 3)

        settings.policy.context_max_tokens = 999
        self.assertEqual(default_strategy().max_tokens, 999)
        self.assertEqual(first.max_tokens, 1234)

        settings.score_weight_importance = 0.9
        self.assertAlmostEqual(default_weights().importance, 0.9)


if __name__ == "__main__":
    unittest.main()
