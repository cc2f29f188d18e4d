"""Tests for saving records and the save cascade."""

import pytest

from typed_orm import Database, OrmConfig
from typed_orm.errors import (
    MissingPrimaryKeyError,
    MissingReferenceError,
    OptimisticLockError,
    RecordNotFoundError,
    UniqueValueError,
)


class TestRecord:
    """Tests for record values and state."""

    def test_new_record_defaults(self, db):
        """Test the values of a new record."""
        project = db.new("project")

        assert project.is_new
        assert project.primary_key is None
        assert project["name"] == ""
        assert project["num"] == 0
        assert project["status"] == "open"
        assert project["budget"] is None
        assert project["manager_id"] is None
        assert project.lock_token is None

    def test_set_marks_dirty(self, sample):
        """Test that only changed values become dirty."""
        person = sample.load("person", 1)

        person["first_name"] = "Alice"
        assert not person.is_dirty

        person["first_name"] = "Alicia"
        assert person.dirty_fields == {"first_name"}

    def test_set_back_to_original_is_clean(self, sample):
        """Test that restoring the loaded value clears the dirty flag."""
        person = sample.load("person", 1)
        project = sample.load("project", 1)
        token = project.lock_token

        person["first_name"] = "Ally"
        person["first_name"] = "Alice"
        project["name"] = "Renamed"
        project["name"] = "ACME Website"
        project.save()

        assert not person.is_dirty
        assert not project.is_dirty
        assert sample.store.find("project", id=1)[0]["lock_token"] == token

    def test_set_validates(self, db):
        """Test the checks made when setting a value."""
        project = db.new("project")

        with pytest.raises(ValueError, match="generated"):
            project["id"] = 5
        with pytest.raises(ValueError, match="managed"):
            project["lock_token"] = "x"
        with pytest.raises(ValueError, match="cannot be None"):
            project["name"] = None
        with pytest.raises(ValueError, match="not a valid value"):
            project["num"] = "seven"
        with pytest.raises(KeyError):
            project["nickname"] = "x"

    def test_int_accepted_for_float(self, db):
        """Test that an int is stored as a float in a float column."""
        project = db.new("project", budget=10)

        assert project["budget"] == 10.0
        assert isinstance(project["budget"], float)

    def test_to_dict(self, sample):
        """Test the loaded values as a dict."""
        person = sample.load("person", 2)

        assert person.to_dict() == {"id": 2, "first_name": "Bob", "last_name": "Jones"}

    def test_repr(self, sample):
        """Test the record representation."""
        assert repr(sample.new("person")) == "Record(person new)"
        assert repr(sample.load("person", 2)) == "Record(person key=2)"

    def test_unknown_alias(self, sample):
        """Test reading an alias the query did not calculate."""
        with pytest.raises(KeyError):
            sample.load("person", 1).alias("total")


class TestInsert:
    """Tests for inserting new records."""

    def test_insert_assigns_key(self, db):
        """Test that a generated key is set on the record."""
        person = db.new("person", first_name="Ann", last_name="Lee")

        person.save()

        assert not person.is_new
        assert not person.is_dirty
        assert person.primary_key == 1
        assert db.store.rows("person") == [{"id": 1, "first_name": "Ann", "last_name": "Lee"}]

    def test_insert_writes_defaults(self, db):
        """Test that default values are written."""
        project = db.new("project", num=1, name="P")

        project.save()

        assert db.store.rows("project")[0]["status"] == "open"

    def test_manual_key(self, db):
        """Test saving and rekeying a record with a manual composite key."""
        record = db.new("two_key", server="s1", directory="/tmp")
        record.save()

        record["directory"] = "/var"
        record.save()

        assert db.store.rows("two_key") == [{"server": "s1", "directory": "/var", "file_name": ""}]
        assert db.load("two_key", ("s1", "/var")) is not None

    def test_missing_manual_key(self, db):
        """Test that a manual key must be set before the first save."""
        record = db.new("two_key", server="s1")

        with pytest.raises(MissingPrimaryKeyError):
            record.save()
        assert db.store.rows("two_key") == []

    def test_duplicate_unique_value(self, sample):
        """Test that a duplicate unique value raises UniqueValueError."""
        project = sample.new("project", num=1, name="Copy")

        with pytest.raises(UniqueValueError) as exc_info:
            project.save()

        assert exc_info.value.table == "project"
        assert exc_info.value.field == "num"
        assert project.is_new
        assert len(sample.store.rows("project")) == 4

    def test_lock_token_set_on_insert(self, db):
        """Test that inserting into a locked table sets a lock token."""
        root = db.new("root_ul", name="r")

        root.save()

        assert root.lock_token is not None
        assert db.store.rows("root_ul")[0]["lock_token"] == root.lock_token


class TestUpdate:
    """Tests for updating existing records."""

    def test_update_dirty_fields(self, sample):
        """Test that an update writes the changed values."""
        person = sample.load("person", 1)
        person["last_name"] = "Jones"

        person.save()

        assert sample.load("person", 1)["last_name"] == "Jones"
        assert not person.is_dirty

    def test_clean_save_is_noop(self, sample):
        """Test that saving an unchanged record writes nothing."""
        project = sample.load("project", 1)
        token = project.lock_token

        project.save()

        assert project.lock_token == token
        assert sample.store.find("project", id=1)[0]["lock_token"] == token

    def test_update_rotates_lock_token(self, db):
        """Test that each save of a locked record writes a new token."""
        root = db.new("root_ul", name="r")
        root.save()
        first = root.lock_token

        root["name"] = "renamed"
        root.save()

        assert root.lock_token != first
        assert db.store.rows("root_ul")[0]["lock_token"] == root.lock_token

    def test_custom_lock_tokens(self, db):
        """Test that the configured factory makes lock tokens."""
        tokens = iter(["t1", "t2"])
        locked = Database(db.registry, config=OrmConfig(lock_token_factory=lambda: next(tokens)))
        root = locked.new("root_ul", name="r")

        root.save()
        assert root.lock_token == "t1"

        root["name"] = "renamed"
        root.save()
        assert root.lock_token == "t2"

    def test_stale_lock_token(self, db):
        """Test that saving a stale copy raises OptimisticLockError."""
        root = db.new("root_ul", name="r")
        leaf = db.new("leaf_ul", name="l")
        root.set_reverse("leaf_ul", leaf)
        root.save()

        first = db.load("root_ul", root.primary_key)
        second = db.load("root_ul", root.primary_key)
        first["name"] = "first"
        first.save()
        second["name"] = "second"

        with pytest.raises(OptimisticLockError) as exc_info:
            second.save()

        assert exc_info.value.table == "root_ul"
        assert exc_info.value.key == root.primary_key
        assert db.load("root_ul", root.primary_key)["name"] == "first"
        assert second.is_dirty

    def test_last_write_wins_without_lock(self, sample):
        """Test that unlocked tables accept every write in turn."""
        first = sample.load("person", 1)
        second = sample.load("person", 1)

        first["first_name"] = "Ally"
        first.save()
        second["first_name"] = "Alison"
        second["last_name"] = "Stone"
        second.save()

        assert sample.load("person", 1).to_dict() == {
            "id": 1,
            "first_name": "Alison",
            "last_name": "Stone",
        }

    def test_non_overlapping_changes_merge(self, sample):
        """Test that only dirty columns are written."""
        first = sample.load("person", 2)
        second = sample.load("person", 2)

        first["first_name"] = "Robert"
        first.save()
        second["last_name"] = "James"
        second.save()

        assert sample.load("person", 2).to_dict() == {
            "id": 2,
            "first_name": "Robert",
            "last_name": "James",
        }

    def test_update_missing_row(self, sample):
        """Test that updating a deleted unlocked row raises RecordNotFoundError."""
        person = sample.load("person", 4)
        sample.delete_by_key("person", 4)
        person["first_name"] = "Daniel"

        with pytest.raises(RecordNotFoundError):
            person.save()


class TestForwardReference:
    """Tests for saving forward references."""

    def test_saves_new_target_first(self, db):
        """Test that a new referenced record is inserted with the referrer."""
        root = db.new("root_n", name="root")
        leaf = db.new("leaf_n", name="leaf")
        leaf.set_reference("root_n", root)

        leaf.save()

        assert not root.is_new
        assert leaf["root_n_id"] == root.primary_key
        node = db.node("leaf_n")
        loaded = db.load("leaf_n", leaf.primary_key, node["root_n"])
        assert loaded["name"] == "leaf"
        assert loaded.reference("root_n")["name"] == "root"

    def test_clear_nullable_reference(self, db):
        """Test that clearing a nullable reference keeps both rows."""
        root = db.new("root_n", name="root")
        leaf = db.new("leaf_n", name="leaf")
        leaf.set_reference("root_n", root)
        leaf.save()
        node = db.node("leaf_n")
        loaded = db.load("leaf_n", leaf.primary_key, node["root_n"])

        loaded.set_reference("root_n", None)
        loaded.save()

        reloaded = db.load("leaf_n", leaf.primary_key, node["root_n"])
        assert reloaded.reference("root_n") is None
        assert reloaded["root_n_id"] is None
        assert db.load("root_n", root.primary_key) is not None

    def test_clear_nullable_unique_reference(self, db):
        """Test clearing a nullable unique reference."""
        root = db.new("root_un", name="root")
        leaf = db.new("leaf_un", name="leaf")
        leaf.set_reference("root_un", root)
        leaf.save()

        leaf.set_reference("root_un", None)
        leaf.save()

        assert db.store.rows("leaf_un")[0]["root_un_id"] is None
        assert len(db.store.rows("root_un")) == 1

    def test_required_reference_unset(self, db):
        """Test that a required reference must be set before saving."""
        leaf = db.new("leaf_u", name="leaf")

        with pytest.raises(MissingReferenceError) as exc_info:
            leaf.save()

        assert exc_info.value.relationship == "root_u"
        assert db.store.rows("leaf_u") == []

    def test_required_reference_cleared(self, db):
        """Test that a required reference cannot be set to None."""
        leaf = db.new("leaf_u", name="leaf")

        with pytest.raises(MissingReferenceError):
            leaf.set_reference("root_u", None)

    def test_missing_reference_checked_before_writes(self, db):
        """Test that nothing is written when a cascaded record lacks a reference."""
        milestone = db.new("milestone", name="orphan")
        task = db.new("task", title="Sketch")
        task.set_reference("milestone", milestone)

        with pytest.raises(MissingReferenceError) as exc_info:
            task.save()

        assert exc_info.value.table == "milestone"
        assert exc_info.value.relationship == "project"
        assert task.is_new
        assert db.store.rows("milestone") == []
        assert db.store.rows("task") == []

    def test_second_owner_of_unique_target(self, db):
        """Test that a unique target cannot gain a second referrer."""
        root = db.new("root_u", name="root")
        first = db.new("leaf_u", name="first")
        first.set_reference("root_u", root)
        first.save()
        second = db.new("leaf_u", name="second")
        second.set_reference("root_u", root)

        with pytest.raises(UniqueValueError) as exc_info:
            second.save()

        assert exc_info.value.field == "root_u_id"
        assert second.is_new
        assert db.store.find("leaf_u", root_u_id=root.primary_key) == [
            {"id": first.primary_key, "name": "first", "root_u_id": root.primary_key}
        ]

    def test_reassign_detaches_old_reverse_slot(self, db):
        """Test that moving a reference updates the old target's slot."""
        old = db.new("root_un", name="old")
        new = db.new("root_un", name="new")
        leaf = db.new("leaf_un", name="leaf")
        old.set_reverse("leaf_un", leaf)
        old.save()
        new.save()

        leaf.set_reference("root_un", new)
        leaf.save()

        assert old.reverse("leaf_un") is None
        assert db.store.rows("leaf_un")[0]["root_un_id"] == new.primary_key

    def test_setting_key_detaches_reference(self, sample):
        """Test that writing a foreign key drops a mismatched attached record."""
        project = sample.load("project", 1)
        project.load_reference("manager")

        project["manager_id"] = 2
        assert project.reference("manager") is None

        project.save()
        assert sample.load("project", 1)["manager_id"] == 2

    def test_saves_dirty_target(self, sample):
        """Test that a changed referenced record is saved with the referrer."""
        project = sample.load("project", 1)
        manager = project.load_reference("manager")
        manager["first_name"] = "Alicia"

        project.save()

        assert sample.load("person", 1)["first_name"] == "Alicia"


class TestReverseReference:
    """Tests for saving reverse references."""

    def test_insert_children_with_parent(self, db):
        """Test that new children get the parent's key."""
        project = db.new("project", num=1, name="P")
        project.set_reverse("milestones", [db.new("milestone", name="a"), db.new("milestone", name="b")])

        project.save()

        rows = db.store.rows("milestone")
        assert [r["name"] for r in rows] == ["a", "b"]
        assert all(r["project_id"] == project.primary_key for r in rows)

    def test_add_reverse(self, sample):
        """Test attaching one more child to a loaded parent."""
        project = sample.load("project", 3)
        project.add_reverse("milestones", sample.new("milestone", name="Bake"))

        project.save()

        assert [m["name"] for m in project.load_reverse("milestones")] == ["Bake"]

    def test_displaced_required_children_deleted(self, sample):
        """Test that replacing required children deletes the old ones."""
        project = sample.load("project", 1)
        old = project.load_reverse("milestones")
        task = sample.new("task", title="Sketch")
        task.set_reference("milestone", old[0])
        task.save()

        project.set_reverse("milestones", [sample.new("milestone", name="Redo")])
        project.save()

        assert [m["name"] for m in sample.store.find("milestone", project_id=1)] == ["Redo"]
        assert sample.store.rows("task") == []
        assert all(m.is_new for m in old)

    def test_kept_children_survive(self, sample):
        """Test that children kept in the new value are not touched."""
        project = sample.load("project", 1)
        old = project.load_reverse("milestones")

        project.set_reverse("milestones", [old[1]])
        project.save()

        assert [m["name"] for m in sample.store.find("milestone", project_id=1)] == ["Build"]
        assert not old[1].is_new

    def test_displaced_nullable_child_nulled(self, db):
        """Test that replacing a nullable unique child clears its key."""
        root = db.new("root_un", name="root")
        first = db.new("leaf_un", name="first")
        root.set_reverse("leaf_un", first)
        root.save()

        second = db.new("leaf_un", name="second")
        root.set_reverse("leaf_un", second)
        root.save()

        rows = {r["name"]: r["root_un_id"] for r in db.store.rows("leaf_un")}
        assert rows == {"first": None, "second": root.primary_key}
        assert first["root_un_id"] is None
        assert not first.is_dirty

    def test_displaced_required_unique_child_deleted(self, db):
        """Test that replacing a required unique child deletes the old one."""
        root = db.new("root_u", name="root")
        first = db.new("leaf_u", name="first")
        root.set_reverse("leaf_u", first)
        root.save()

        root.set_reverse("leaf_u", db.new("leaf_u", name="second"))
        root.save()

        assert [r["name"] for r in db.store.rows("leaf_u")] == ["second"]
        assert first.is_new

    def test_attach_detach_reattach(self, db):
        """Test that a nullable unique link can be removed and restored."""
        root = db.new("root_un", name="root")
        leaf = db.new("leaf_un", name="leaf")

        root.set_reverse("leaf_un", leaf)
        root.save()
        root.set_reverse("leaf_un", None)
        root.save()
        root.set_reverse("leaf_un", leaf)
        root.save()

        assert len(db.store.rows("root_un")) == 1
        assert db.store.rows("leaf_un") == [
            {"id": leaf.primary_key, "name": "leaf", "root_un_id": root.primary_key}
        ]
        assert root.reverse("leaf_un") is leaf
        assert leaf.reference("root_un") is root

    def test_displaced_locked_child_keeps_token_current(self, db):
        """Test that a nulled locked child can still be saved."""
        root = db.new("root_ul", name="root")
        leaf = db.new("leaf_ul", name="leaf")
        root.set_reverse("leaf_ul", leaf)
        root.save()

        root.set_reverse("leaf_ul", None)
        root.save()
        leaf["name"] = "renamed"
        leaf.save()

        assert db.store.rows("leaf_ul")[0]["name"] == "renamed"
        assert db.store.rows("leaf_ul")[0]["root_ul_id"] is None

    def test_partially_loaded_child_not_rewritten(self, db):
        """Test that saving a parent leaves a child loaded without its key untouched."""
        root = db.new("root_ul", name="root")
        leaf = db.new("leaf_ul", name="leaf")
        root.set_reverse("leaf_ul", leaf)
        root.save()
        other = db.load("leaf_ul", leaf.primary_key)
        node = db.node("root_ul")
        loaded = db.query("root_ul").select(node["name"], node["leaf_ul"]["name"]).get()

        loaded["name"] = "renamed"
        loaded.save()

        assert db.store.rows("leaf_ul")[0]["lock_token"] == other.lock_token
        other["name"] = "changed"
        other.save()
        assert db.store.rows("leaf_ul")[0]["name"] == "changed"
        assert db.store.rows("leaf_ul")[0]["root_ul_id"] == root.primary_key

    def test_saves_dirty_children(self, sample):
        """Test that changed loaded children are saved with the parent."""
        person = sample.load("person", 1)
        projects = person.load_reverse("managed_projects")
        projects[1]["name"] = "Muffins"

        person.save()

        assert sample.load("project", 3)["name"] == "Muffins"

    def test_cycle_saved_once(self, db):
        """Test that records linked both ways are each written once."""
        person = db.new("person", first_name="Ann", last_name="Lee")
        project = db.new("project", num=1, name="P")
        person.add_reverse("managed_projects", project)

        project.save()

        assert len(db.store.rows("person")) == 1
        assert db.store.rows("project")[0]["manager_id"] == person.primary_key


class TestAtomicity:
    """Tests for rolling back failed cascades."""

    def test_failed_cascade_rolls_back(self, sample):
        """Test that a failed cascade leaves the store and records unchanged."""
        manager = sample.new("person", first_name="Eve", last_name="Adams")
        project = sample.new("project", num=2, name="Clash")
        project.set_reference("manager", manager)

        with pytest.raises(UniqueValueError):
            project.save()

        assert len(sample.store.rows("person")) == 4
        assert manager.is_new
        assert manager.primary_key is None

    def test_partial_writes_without_atomic_cascades(self, sample):
        """Test that cascades are not rolled back when atomicity is off."""
        db = Database(sample.registry, store=sample.store, config=OrmConfig(atomic_cascades=False))
        manager = db.new("person", first_name="Eve", last_name="Adams")
        project = db.new("project", num=2, name="Clash")
        project.set_reference("manager", manager)

        with pytest.raises(UniqueValueError):
            project.save()

        assert len(sample.store.rows("person")) == 5
        assert not manager.is_new
