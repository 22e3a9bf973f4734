"""
Unit tests for MoneyTracker.settings.lib and MoneyTracker.settings.locale
(covers validators, ConfigPaths, SettingsAPI and Babel formatting helpers).

Run with:
    python -m unittest tests.test_settings
"""
import json
import pathlib
import unittest
from typing import Any, Dict

from MoneyTracker.settings import lib, locale
from MoneyTracker.settings.lib import SETTINGS_SCHEMA, SettingsAPI, _validate_cache, _validate_items
from MoneyTracker.signals import signals
from MoneyTracker.status import status
from tests.base import BaseTestCase


def template_data() -> Dict[str, Any]:
    path = pathlib.Path(lib.__file__).parent.parent / 'config' / 'settings.json.template'
    with path.open('r', encoding='utf-8') as f:
        return json.load(f)


class ValidatorTests(unittest.TestCase):

    def test_template_is_valid(self):
        data = template_data()
        _validate_cache(data['cache'], SETTINGS_SCHEMA['cache'])
        _validate_items('metadata', data['metadata'], SETTINGS_SCHEMA['metadata']['item_schema'])

    def test_cache_missing_family(self):
        with self.assertRaises(ValueError):
            _validate_cache({'transactions': 24}, SETTINGS_SCHEMA['cache'])

    def test_cache_bad_ttl(self):
        data = template_data()['cache']
        data['goals'] = 0
        with self.assertRaises(ValueError):
            _validate_cache(data, SETTINGS_SCHEMA['cache'])
        data['goals'] = True
        with self.assertRaises(TypeError):
            _validate_cache(data, SETTINGS_SCHEMA['cache'])

    def test_metadata_allowed_values(self):
        data = template_data()['metadata']
        data['transaction_load'] = 'year'
        with self.assertRaises(ValueError):
            _validate_items('metadata', data, SETTINGS_SCHEMA['metadata']['item_schema'])

    def test_bool_is_not_int(self):
        data = template_data()['metadata']
        data['alert_threshold'] = True
        with self.assertRaises(TypeError):
            _validate_items('metadata', data, SETTINGS_SCHEMA['metadata']['item_schema'])


class ConfigPathsTests(BaseTestCase):

    def test_paths(self):
        root = pathlib.Path(self.tmp_dir)
        self.assertEqual(self.settings.config_dir, root / 'config')
        self.assertEqual(self.settings.cache_dir, root / 'cache')
        self.assertTrue(self.settings.settings_path.exists())
        self.assertTrue(self.settings.cache_dir.is_dir())
        self.assertEqual(self.settings.key_path.parent, self.settings.config_dir)

    def test_revert_settings_to_template(self):
        self.settings.settings_path.write_text('{}', encoding='utf-8')
        self.settings.revert_settings_to_template()
        with self.settings.settings_path.open('r', encoding='utf-8') as f:
            self.assertEqual(json.load(f), template_data())


class SettingsAPIBehaviour(BaseTestCase):
    """Functional coverage for SettingsAPI."""

    def setUp(self) -> None:
        super().setUp()
        self.api: SettingsAPI = lib.settings

    def test_defaults(self):
        self.assertEqual(self.api['locale'], 'en_US')
        self.assertEqual(self.api['alert_threshold'], 80)
        self.assertEqual(self.api.get_section('cache')['transactions'], 24)
        self.assertEqual(self.api.get_section('sync')['max_attempts'], 6)

    def test_metadata_get_set_and_coercion(self):
        self.api['alert_threshold'] = '90'
        self.assertEqual(self.api['alert_threshold'], 90)
        with self.assertRaises(KeyError):
            _ = self.api['bogus']
        with self.assertRaises(KeyError):
            self.api['bogus'] = 1

    def test_metadata_conversion_failure(self):
        with self.assertRaises(ValueError):
            self.api['alert_threshold'] = 'eighty'

    def test_metadata_invalid_value_is_not_saved(self):
        with self.assertRaises(ValueError):
            self.api['transaction_load'] = 'year'
        self.assertEqual(self.api['transaction_load'], 'month')

    def test_metadata_is_persisted(self):
        self.api['currency'] = 'EUR'
        other = SettingsAPI(root=self.tmp_dir)
        self.assertEqual(other['currency'], 'EUR')

    def test_metadata_signal(self):
        emitted = []
        slot = lambda key, value: emitted.append((key, value))
        signals.metadataChanged.connect(slot)
        self.addCleanup(signals.metadataChanged.disconnect, slot)

        self.api['locale'] = 'de_DE'
        self.api.block_signals(True)
        self.api['locale'] = 'fr_FR'
        self.api.block_signals(False)
        self.assertEqual(emitted, [('locale', 'de_DE')])

    def test_get_section_returns_copy(self):
        cache = self.api.get_section('cache')
        cache['transactions'] = 1
        self.assertEqual(self.api.get_section('cache')['transactions'], 24)

    def test_set_section(self):
        cache = self.api.get_section('cache')
        cache['transactions'] = 2
        self.api.set_section('cache', cache)
        self.assertEqual(SettingsAPI(root=self.tmp_dir).get_section('cache')['transactions'], 2)

    def test_set_section_invalid_value_rollback(self):
        remote = self.api.get_section('remote')
        remote['worksheets']['goals'] = ''
        with self.assertRaises(ValueError):
            self.api.set_section('remote', remote)
        self.assertEqual(self.api.get_section('remote')['worksheets']['goals'], 'Goals')

    def test_set_unknown_section(self):
        with self.assertRaises(ValueError):
            self.api.set_section('bogus', {})
        with self.assertRaises(ValueError):
            self.api.revert_section('bogus')

    def test_revert_section(self):
        sync = self.api.get_section('sync')
        sync['max_attempts'] = 99
        self.api.set_section('sync', sync)
        self.api.revert_section('sync')
        self.assertEqual(self.api.get_section('sync')['max_attempts'], 6)

    def test_save_section_preserves_other_sections(self):
        with self.api.settings_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
        data['sync']['poll_interval'] = 5.0
        with self.api.settings_path.open('w', encoding='utf-8') as f:
            json.dump(data, f)

        self.api['currency'] = 'GBP'
        with self.api.settings_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
        self.assertEqual(data['sync']['poll_interval'], 5.0)
        self.assertEqual(data['metadata']['currency'], 'GBP')

    def test_invalid_file(self):
        self.api.settings_path.write_text('{ not json', encoding='utf-8')
        with self.assertRaises(status.SettingsInvalidException):
            self.api.load_settings()

    def test_missing_section(self):
        data = template_data()
        del data['sync']
        self.api.settings_path.write_text(json.dumps(data), encoding='utf-8')
        with self.assertRaises(status.SettingsInvalidException):
            self.api.load_settings()

    def test_missing_file(self):
        self.api.settings_path.unlink()
        with self.assertRaises(status.SettingsNotFoundException):
            self.api.load_settings()


class LocaleTests(unittest.TestCase):

    def test_currency_from_locale(self):
        self.assertEqual(locale.get_currency_from_locale('de_DE'), 'EUR')
        self.assertEqual(locale.get_currency_from_locale('xx_ZZ'), 'USD')
        self.assertEqual(locale.get_currency_from_locale('en'), 'USD')

    def test_format_currency(self):
        self.assertEqual(locale.format_currency_value(1234.5, 'en_US'), '$1,234.50')
        self.assertEqual(locale.format_currency_value(10, 'en_US', 'EUR'), '€10.00')

    def test_format_percentage(self):
        self.assertEqual(locale.format_percentage(85, 'en_US'), '85%')
        self.assertEqual(locale.format_percentage(150, 'en_US'), '150%')

    def test_bad_locale_falls_back(self):
        self.assertEqual(locale.format_currency_value(5, 'not_a_locale', 'USD'), '5 USD')
        self.assertEqual(locale.format_decimal(5, 'not_a_locale'), '5')


if __name__ == '__main__':
    unittest.main()
