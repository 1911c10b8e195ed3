from __future__ import annotations

import unittest

from cenabast_sync.services.broker_client import (
    BrokerHttpFailure,
    BrokerSoftFailure,
    BrokerTransportFailure,
)
from cenabast_sync.services.broker_error_service import (
    BrokerErrorCategory,
    classify,
    classify_outcome,
    format_for_log,
    format_for_user,
)


class ClassifyTests(unittest.TestCase):
    def test_null_column_is_named_in_details(self) -> None:
        error = classify(
            {'statusCode': 500, 'isSuccessful': False, 'errorMessage': "Cannot insert NULL into column 'fecha_stock'"}
        )

        self.assertEqual(error.category, BrokerErrorCategory.REQUIRED_FIELD_NULL)
        self.assertTrue(error.recoverable)
        self.assertTrue(any('fecha_stock' in detail for detail in error.details))

    def test_first_matching_category_wins(self) -> None:
        error = classify({'statusCode': 401, 'errorMessage': 'SqlDateTime overflow while validating token'})

        self.assertEqual(error.category, BrokerErrorCategory.INVALID_DATE_RANGE)

    def test_foreign_key_and_conversion(self) -> None:
        self.assertEqual(
            classify({'error': 'The INSERT statement conflicted with FK_Producto'}).category,
            BrokerErrorCategory.FOREIGN_KEY_VIOLATION,
        )
        conversion = classify({'message': "Conversion failed when converting the varchar value 'x' to int"})
        self.assertEqual(conversion.category, BrokerErrorCategory.TYPE_CONVERSION_FAILURE)
        self.assertIn('expected type: int', conversion.details)

    def test_status_based_categories(self) -> None:
        self.assertEqual(classify({'statusCode': 401}).category, BrokerErrorCategory.UNAUTHORIZED)
        not_found = classify({'statusCode': 404, 'message': 'no route'})
        self.assertEqual(not_found.category, BrokerErrorCategory.NOT_FOUND)
        self.assertFalse(not_found.recoverable)
        server = classify({'statusCode': 500, 'message': 'x' * 500})
        self.assertEqual(server.category, BrokerErrorCategory.SERVER_ERROR)
        self.assertEqual(len(server.details[0]), 200)

    def test_unknown_is_not_recoverable(self) -> None:
        error = classify({'statusCode': 418, 'message': 'teapot'})

        self.assertEqual(error.category, BrokerErrorCategory.UNKNOWN)
        self.assertFalse(error.recoverable)
        self.assertEqual(error.message, 'teapot')


class ClassifyOutcomeTests(unittest.TestCase):
    def test_soft_and_http_failures_classify_identically(self) -> None:
        body = {'isSuccessful': False, 'statusCode': 500, 'errorMessage': 'Column does not allow nulls'}

        soft = classify_outcome(BrokerSoftFailure(status_code=200, body=body))
        hard = classify_outcome(BrokerHttpFailure(status_code=500, body=body))

        self.assertEqual(soft.category, BrokerErrorCategory.REQUIRED_FIELD_NULL)
        self.assertEqual(soft, hard)

    def test_transport_failures_are_recoverable(self) -> None:
        timeout = classify_outcome(BrokerTransportFailure(message='Timeout: broker did not answer', timed_out=True))
        refused = classify_outcome(BrokerTransportFailure(message='Broker network error: refused'))

        self.assertEqual(timeout.category, BrokerErrorCategory.TIMEOUT)
        self.assertTrue(timeout.recoverable)
        self.assertTrue(refused.recoverable)

    def test_formatters(self) -> None:
        error = classify({'statusCode': 500, 'errorMessage': "Cannot insert NULL into column 'lote'"})

        self.assertIn('affected field: lote', format_for_user(error))
        self.assertTrue(format_for_log(error).startswith('[REQUIRED_FIELD_NULL]'))


if __name__ == '__main__':
    unittest.main()
