from __future__ import annotations

import unittest

from cenabast_sync.services.identifier_service import (
    normalize_digits,
    normalize_generic_code,
    normalize_tax_id,
)


class NormalizeTaxIdTests(unittest.TestCase):
    def test_punctuated_and_plain_forms_agree(self) -> None:
        self.assertEqual(normalize_tax_id('96.519.830-K'), 96519830)
        self.assertEqual(normalize_tax_id('96519830-K'), 96519830)
        self.assertEqual(normalize_tax_id(96519830), 96519830)
        self.assertEqual(normalize_tax_id(' 96 519 830-5 '), 96519830)

    def test_placeholder_and_empty_values_are_absent(self) -> None:
        self.assertIsNone(normalize_tax_id('11-101'))
        self.assertIsNone(normalize_tax_id(None))
        self.assertIsNone(normalize_tax_id(''))
        self.assertIsNone(normalize_tax_id('   '))
        self.assertIsNone(normalize_tax_id(12345))

    def test_garbage_never_raises(self) -> None:
        self.assertIsNone(normalize_tax_id('ABC-1'))
        self.assertIsNone(normalize_tax_id('-'))
        self.assertIsNone(normalize_tax_id(True))

    def test_non_finite_floats_are_absent(self) -> None:
        for value in (float('nan'), float('inf'), float('-inf')):
            self.assertIsNone(normalize_tax_id(value))
            self.assertIsNone(normalize_digits(value))
            self.assertEqual(normalize_generic_code(value), 0)


class NormalizeDigitsTests(unittest.TestCase):
    def test_zero_means_absent(self) -> None:
        self.assertIsNone(normalize_digits('0'))
        self.assertIsNone(normalize_digits(0))
        self.assertIsNone(normalize_digits(None))
        self.assertIsNone(normalize_digits('000'))

    def test_strips_non_digits(self) -> None:
        self.assertEqual(normalize_digits('698201'), 698201)
        self.assertEqual(normalize_digits('F-698.201'), 698201)
        self.assertEqual(normalize_digits(42), 42)


class NormalizeGenericCodeTests(unittest.TestCase):
    def test_unknown_codes_become_zero(self) -> None:
        self.assertEqual(normalize_generic_code(None), 0)
        self.assertEqual(normalize_generic_code(''), 0)
        self.assertEqual(normalize_generic_code('abc'), 0)

    def test_numeric_codes_are_kept(self) -> None:
        self.assertEqual(normalize_generic_code('100000122'), 100000122)
        self.assertEqual(normalize_generic_code(' 100-000-122 '), 100000122)
        self.assertEqual(normalize_generic_code(100000122), 100000122)


if __name__ == '__main__':
    unittest.main()
