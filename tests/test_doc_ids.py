import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from quarry.doc_ids import (
    generate_app_id,
    generate_datasource_id,
    generate_query_id,
    get_dev_app_id,
    get_prod_app_id,
    is_dev_app_id,
    is_prod_app_id,
    query_prefix,
)


class TestDocIds(unittest.TestCase):
    def test_generated_app_id_is_development(self) -> None:
        app_id = generate_app_id()
        self.assertTrue(app_id.startswith("app_dev_"))
        self.assertTrue(is_dev_app_id(app_id))
        self.assertFalse(is_prod_app_id(app_id))

    def test_prod_and_dev_ids_round_trip(self) -> None:
        dev_id = generate_app_id()
        prod_id = get_prod_app_id(dev_id)
        self.assertTrue(is_prod_app_id(prod_id))
        self.assertEqual(prod_id, "app_" + dev_id[len("app_dev_"):])
        self.assertEqual(get_dev_app_id(prod_id), dev_id)

    def test_conversions_leave_matching_ids_alone(self) -> None:
        self.assertEqual(get_prod_app_id("app_abc"), "app_abc")
        self.assertEqual(get_dev_app_id("app_dev_abc"), "app_dev_abc")

    def test_non_app_ids(self) -> None:
        self.assertFalse(is_dev_app_id(None))
        self.assertFalse(is_prod_app_id(None))
        self.assertFalse(is_prod_app_id("datasource_abc"))

    def test_query_ids_share_datasource_prefix(self) -> None:
        datasource_id = generate_datasource_id()
        self.assertTrue(datasource_id.startswith("datasource_"))
        query_id = generate_query_id(datasource_id)
        self.assertTrue(query_id.startswith(query_prefix(datasource_id)))
        self.assertTrue(query_id.startswith(query_prefix()))
        self.assertNotEqual(query_id, generate_query_id(datasource_id))


if __name__ == "__main__":
    unittest.main()
