"""
Module for formatting decimal, currency and percentage values using Babel.

"""
import logging
from decimal import Decimal
from typing import List, Optional, Union

from babel import Locale, numbers
from babel.core import UnknownLocaleError

Number = Union[int, float, Decimal]

CURRENCY_MAP: dict[str, str] = {
    'US': 'USD',
    'GB': 'GBP',
    'DE': 'EUR',
    'FR': 'EUR',
    'BE': 'EUR',
    'IT': 'EUR',
    'ES': 'EUR',
    'JP': 'JPY',
    'CA': 'CAD',
    'AU': 'AUD',
    'IN': 'INR',
    'BR': 'BRL',
    'CN': 'CNY',
    'KR': 'KRW',
    'DK': 'DKK',
    'SE': 'SEK',
    'NO': 'NOK',
    'FI': 'EUR',
    'HU': 'HUF',
    'MX': 'MXN',
    'ZA': 'ZAR',
    'NL': 'EUR',
}

LOCALE_MAP: List[str] = [
    'en_US',
    'en_GB',
    'de_DE',
    'es_ES',
    'fr_FR',
    'hu_HU',
    'it_IT',
    'ja_JP',
    'nl_NL',
    'pt_BR',
    'sv_SE',
]


def get_currency_from_locale(locale: str) -> str:
    """
    Retrieve the default currency code based on the locale's territory.

    Args:
        locale (str): Locale string, e.g. 'fr_FR'.

    Returns:
        str: Currency code such as 'EUR'. Defaults to 'USD' if the territory is unknown.
    """
    parts = locale.split('_')
    if len(parts) < 2:
        return 'USD'
    return CURRENCY_MAP.get(parts[1], 'USD')


def format_decimal(value: Number, locale: str) -> str:
    """
    Format a number as a decimal string according to the locale conventions.

    Args:
        value: The numeric value to be formatted.
        locale (str): Locale string, e.g. 'en_US'.

    Returns:
        str: The formatted decimal string.
    """
    try:
        return numbers.format_decimal(value, locale=Locale.parse(locale))
    except (ValueError, TypeError, UnknownLocaleError) as ex:
        logging.debug(f'Error formatting decimal: {ex}')
        return str(value)


def format_currency_value(value: Number, locale: str, currency: Optional[str] = None) -> str:
    """
    Format a number as a currency string.

    Args:
        value: The numeric value to be formatted.
        locale (str): Locale string, e.g. 'fr_FR'.
        currency (str, optional): ISO currency code. Defaults to the locale's own currency.

    Returns:
        str: The formatted currency string.
    """
    currency = currency or get_currency_from_locale(locale)
    try:
        return numbers.format_currency(value, currency=currency, locale=Locale.parse(locale))
    except (ValueError, TypeError, UnknownLocaleError) as ex:
        logging.debug(f'Error formatting currency: {ex}')
        return f'{value} {currency}'


def format_percentage(value: Number, locale: str) -> str:
    """
    Format a percentage given in the 0-100 range, e.g. 85 becomes '85%'.

    Args:
        value: Percentage between 0 and 100 (or above).
        locale (str): Locale string, e.g. 'en_US'.

    Returns:
        str: The formatted percentage without decimals.
    """
    try:
        return numbers.format_percent(Decimal(str(value)) / 100, format='#,##0%', locale=Locale.parse(locale))
    except (ValueError, TypeError, ArithmeticError, UnknownLocaleError) as ex:
        logging.debug(f'Error formatting percentage: {ex}')
        return f'{value:.0f}%'
