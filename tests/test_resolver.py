import unittest

from models.project import Project
from services.errors import ResolutionFailure
from services.resolver import ProjectResolver, ProjectSnapshot, coerce_project_id
from tests.utils.db import DatabaseTestCase


class CoerceProjectIdTestCase(unittest.TestCase):
    def test_accepts_integer_like_values(self):
        self.assertEqual(coerce_project_id(7), 7)
        self.assertEqual(coerce_project_id(7.0), 7)
        self.assertEqual(coerce_project_id(" 12 "), 12)

    def test_rejects_everything_else(self):
        for value in (None, True, 7.5, "abc", "", [], {"id": 1}):
            with self.subTest(value=value):
                self.assertIsNone(coerce_project_id(value))


class ProjectResolverTestCase(unittest.TestCase):
    def setUp(self):
        self.resolver = ProjectResolver(
            ProjectSnapshot.from_rows([(1, "Foo Trailer"), (2, "Bar Doc"), (5, "Bar Doc")])
        )

    def test_identifier_wins_over_name(self):
        self.assertEqual(self.resolver.resolve(2, "Foo Trailer"), 2)

    def test_string_identifier_is_coerced(self):
        self.assertEqual(self.resolver.resolve("1"), 1)

    def test_falls_back_to_exact_name(self):
        self.assertEqual(self.resolver.resolve(99, "Foo Trailer"), 1)
        self.assertEqual(self.resolver.resolve(None, "Foo Trailer"), 1)

    def test_name_match_is_exact(self):
        with self.assertRaises(ResolutionFailure):
            self.resolver.resolve(None, "foo trailer")

    def test_duplicate_names_resolve_to_lowest_id(self):
        self.assertEqual(self.resolver.resolve(None, "Bar Doc"), 2)

    def test_unresolvable_reference(self):
        with self.assertRaises(ResolutionFailure) as raised:
            self.resolver.resolve(99)
        self.assertEqual(raised.exception.identifier, 99)
        self.assertIn("99", str(raised.exception))

    def test_missing_reference(self):
        with self.assertRaises(ResolutionFailure) as raised:
            self.resolver.resolve()
        self.assertIn("no project reference", str(raised.exception))


class ProjectSnapshotLoadTestCase(DatabaseTestCase):
    def test_load_reads_every_project(self):
        self.db.session.add_all([Project(name="One"), Project(name="Two")])
        self.db.session.commit()

        snapshot = ProjectSnapshot.load()

        self.assertEqual(len(snapshot), 2)
        self.assertEqual(set(snapshot.ids_by_name), {"One", "Two"})

    def test_snapshot_does_not_see_later_projects(self):
        snapshot = ProjectSnapshot.load()
        self.db.session.add(Project(name="Late"))
        self.db.session.commit()

        with self.assertRaises(ResolutionFailure):
            ProjectResolver(snapshot).resolve(None, "Late")


if __name__ == "__main__":
    unittest.main()
