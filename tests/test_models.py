import unittest

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from lottomoji.models import Base, Document
from lottomoji.models.utils import BASE62_ALPHABET, generate_document_key


class TestDocumentModel(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine, future=True, expire_on_commit=False
        )

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_defaults_and_lookup(self):
        with self.Session.begin() as session:
            session.add(Document(collection="tickets", key="abc", data={"userId": "u"}))

        with self.Session() as session:
            doc = Document.get_by_key(session, "tickets", "abc")
            self.assertIsNotNone(doc)
            self.assertEqual(doc.version, 1)
            self.assertEqual(doc.data, {"userId": "u"})
            self.assertIsNotNone(doc.created_at)
            self.assertIsNone(Document.get_by_key(session, "game_results", "abc"))

    def test_replace_data_bumps_version(self):
        with self.Session.begin() as session:
            doc = Document(collection="draw_control", key="k", data={"a": 1, "b": 2})
            session.add(doc)
            session.flush()
            doc.replace_data({"b": 3}, merge=True)
            self.assertEqual(doc.data, {"a": 1, "b": 3})
            self.assertEqual(doc.version, 2)
            doc.replace_data({"c": 4})
            self.assertEqual(doc.data, {"c": 4})
            self.assertEqual(doc.version, 3)

        with self.Session() as session:
            stored = Document.get_by_key(session, "draw_control", "k")
            self.assertEqual(stored.data, {"c": 4})
            self.assertEqual(stored.version, 3)

    def test_key_unique_within_collection(self):
        with self.Session.begin() as session:
            session.add(Document(collection="tickets", key="dup"))
            session.add(Document(collection="game_results", key="dup"))

        with self.assertRaises(IntegrityError):
            with self.Session.begin() as session:
                session.add(Document(collection="tickets", key="dup"))


class TestGenerateDocumentKey(unittest.TestCase):
    def test_shape(self):
        key = generate_document_key()
        self.assertEqual(len(key), 20)
        self.assertTrue(set(key) <= set(BASE62_ALPHABET))
        self.assertEqual(len(generate_document_key(length=8)), 8)

    def test_invalid_length(self):
        with self.assertRaises(ValueError):
            generate_document_key(length=0)

    def test_gives_up_after_max_attempts(self):
        with self.assertRaises(RuntimeError):
            generate_document_key(max_attempts=0)

    def test_avoids_pending_keys(self):
        engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(engine)
        Session = sessionmaker(bind=engine, future=True)
        try:
            with Session() as session:
                key = generate_document_key("tickets", session, length=1)
                session.add(Document(collection="tickets", key=key))
                other = generate_document_key("tickets", session, length=1)
                self.assertNotEqual(key, other)
        finally:
            engine.dispose()


if __name__ == "__main__":
    unittest.main()
