"""Unit tests for members_etl.members (interactive member operations)."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from members_etl.members import (
    BulkDeleteFilters,
    MAX_PAGE_SIZE,
    MemberFilterError,
    MemberNotFoundError,
    MemberValidationError,
    create_member,
    delete_member,
    delete_members,
    list_members,
    sync_linked_user_role,
    update_member,
)

UTC = timezone.utc


@pytest.fixture
def public_root(tmp_path):
    (tmp_path / "uploads").mkdir()
    return tmp_path


def _create(store, name="Amina", **extra):
    raw = {"fullName": name, "membershipDate": "2020-01-15", **extra}
    return create_member(store, raw)


# ---------------------------------------------------------------------------
# create_member
# ---------------------------------------------------------------------------

class TestCreateMember:
    def test_creates_normalized_record(self, store, audit):
        member = create_member(store, {
            "fullName": " Amina ",
            "gender": "female",
            "phone": "06 12 34",
            "cin": "",
            "membershipDate": "2020-1-15",
        }, audit, actor="sec")
        assert member["full_name"] == "Amina"
        assert member["gender"] == "F"
        assert member["phone"] == "061234"
        assert member["cin"] is None
        assert member["joined_at"] == datetime(2020, 1, 15, tzinfo=UTC)
        assert audit.entries[0]["action"] == "create"
        assert audit.entries[0]["before"] is None

    def test_membership_date_required(self, store):
        with pytest.raises(MemberValidationError):
            create_member(store, {"fullName": "Amina"})
        assert store.members == {}

    def test_unparseable_membership_date_refused(self, store):
        with pytest.raises(MemberValidationError):
            create_member(store, {"fullName": "Amina", "membershipDate": "soon"})

    def test_unknown_gender_rejected_by_storage(self, store):
        with pytest.raises(Exception, match="gender"):
            _create(store, gender="X")

    def test_role_promotes_linked_viewer(self, store):
        store.add_user("amina", role="viewer", member_id=1)
        _create(store, role="Treasurer")
        assert store.users[1]["role"] == "responsible"

    def test_role_sync_audited(self, store, audit):
        store.add_user("amina", role="viewer", member_id=1)
        create_member(store, {"fullName": "Amina", "membershipDate": "2020-01-15", "role": "Treasurer"}, audit)
        assert [e["entity_type"] for e in audit.entries] == ["Member", "User"]


# ---------------------------------------------------------------------------
# linked role sync
# ---------------------------------------------------------------------------

class TestSyncLinkedUserRole:
    @pytest.mark.parametrize("role", ["admin", "secretary", "responsible"])
    def test_higher_or_same_roles_untouched(self, store, role):
        member = _create(store)
        store.add_user("u", role=role, member_id=member["id"])
        assert sync_linked_user_role(store, {**member, "role": "Chair"}, None, None) is False
        assert store.users[1]["role"] == role

    def test_member_without_role(self, store):
        member = _create(store)
        store.add_user("u", member_id=member["id"])
        assert sync_linked_user_role(store, member, None, None) is False
        assert store.users[1]["role"] == "viewer"

    def test_no_linked_user(self, store):
        member = _create(store, role="Chair")
        assert sync_linked_user_role(store, member, None, None) is False

    def test_failure_logged_not_raised(self, store, caplog):
        member = _create(store, role="Chair")
        store.fail_on.add("find_linked_user")
        assert sync_linked_user_role(store, member, None, None) is False
        assert "Failed to sync member role" in caplog.text

    def test_failed_role_update_keeps_member(self, store, audit):
        store.add_user("amina", role="viewer", member_id=1)
        store.fail_on.add("set_user_role")
        member = create_member(
            store, {"fullName": "Amina", "membershipDate": "2020-01-15", "role": "Chair"}, audit
        )
        assert store.find_by_id(member["id"])["full_name"] == "Amina"
        assert store.users[1]["role"] == "viewer"
        assert [e["entity_type"] for e in audit.entries] == ["Member"]


# ---------------------------------------------------------------------------
# update_member
# ---------------------------------------------------------------------------

class TestUpdateMember:
    def test_only_present_fields_written(self, store, audit):
        member = _create(store, email="a@x.org", occupation="librarian")
        updated = update_member(store, member["id"], {"occupation": "nurse"}, audit)
        assert updated["occupation"] == "nurse"
        assert updated["email"] == "a@x.org"
        assert audit.entries[-1]["before"]["occupation"] == "librarian"
        assert audit.entries[-1]["after"]["occupation"] == "nurse"

    def test_blank_text_clears(self, store):
        member = _create(store, bio="old bio")
        assert update_member(store, member["id"], {"bio": "  "})["bio"] is None

    def test_blank_membership_date_keeps_stored(self, store):
        member = _create(store)
        updated = update_member(store, member["id"], {"membershipDate": ""})
        assert updated["joined_at"] == datetime(2020, 1, 15, tzinfo=UTC)

    def test_dateless_membership_text_keeps_stored(self, store):
        member = _create(store)
        updated = update_member(store, member["id"], {"membershipDate": "may"})
        assert updated["joined_at"] == datetime(2020, 1, 15, tzinfo=UTC)

    def test_blank_cin_keeps_stored(self, store):
        member = _create(store, cin="AB12")
        assert update_member(store, member["id"], {"cin": " "})["cin"] == "AB12"

    def test_unknown_id(self, store):
        with pytest.raises(MemberNotFoundError):
            update_member(store, 999, {"bio": "x"})

    def test_changed_photo_removes_old_file(self, store, public_root):
        old = public_root / "uploads" / "1-old.jpg"
        old.write_bytes(b"x")
        member = _create(store, photoUrl="/static/uploads/1-old.jpg")
        update_member(store, member["id"], {"photoUrl": "/static/uploads/2-new.jpg"}, public_root=public_root)
        assert not old.exists()

    def test_unchanged_photo_kept(self, store, public_root):
        photo = public_root / "uploads" / "1-old.jpg"
        photo.write_bytes(b"x")
        member = _create(store, photoUrl="/static/uploads/1-old.jpg")
        update_member(store, member["id"], {"bio": "hi"}, public_root=public_root)
        assert photo.exists()

    def test_overlong_old_photo_url_does_not_fail_update(self, store, public_root):
        member = _create(store, photoUrl="/static/uploads/" + "a" * 300)
        updated = update_member(store, member["id"], {"photoUrl": None}, public_root=public_root)
        assert updated["photo_url"] is None

    def test_foreign_photo_url_never_deleted(self, store, public_root):
        outside = public_root / "keep.txt"
        outside.write_text("x")
        member = _create(store, photoUrl="/static/uploads/../keep.txt")
        update_member(store, member["id"], {"photoUrl": None}, public_root=public_root)
        assert outside.exists()


# ---------------------------------------------------------------------------
# delete_member / delete_members
# ---------------------------------------------------------------------------

class TestDeleteMember:
    def test_deletes_and_removes_photo(self, store, audit, public_root):
        photo = public_root / "uploads" / "p.jpg"
        photo.write_bytes(b"x")
        member = _create(store, photoUrl="/static/uploads/p.jpg")
        deleted = delete_member(store, member["id"], audit, public_root=public_root)
        assert deleted["id"] == member["id"]
        assert store.members == {}
        assert not photo.exists()
        assert audit.entries[-1]["action"] == "delete"
        assert audit.entries[-1]["after"] is None

    def test_unknown_id(self, store):
        with pytest.raises(MemberNotFoundError):
            delete_member(store, 42)

    def test_overlong_photo_url_does_not_fail_delete(self, store, public_root):
        member = _create(store, photoUrl="/static/uploads/" + "a" * 300)
        delete_member(store, member["id"], public_root=public_root)
        assert store.members == {}


class TestDeleteMembers:
    def test_refuses_without_filter_or_confirm(self, store):
        _create(store)
        with pytest.raises(MemberFilterError):
            delete_members(store, BulkDeleteFilters())
        assert store.count() == 1

    def test_confirm_deletes_all(self, store, audit):
        _create(store, "A")
        _create(store, "B")
        assert delete_members(store, BulkDeleteFilters(), confirm=True, audit=audit) == 2
        assert audit.entries[-1]["entity_type"] == "MemberBulk"
        assert audit.entries[-1]["after"] == {"deleted_count": 2}

    def test_filters(self, store):
        _create(store, "A", status="inactive")
        _create(store, "B", status="inactive", membershipDate="2023-05-01")
        _create(store, "C")
        filters = BulkDeleteFilters(status="inactive", joined_before=datetime(2021, 1, 1, tzinfo=UTC))
        assert delete_members(store, filters) == 1
        assert sorted(r["full_name"] for r in store.find_many()) == ["B", "C"]


# ---------------------------------------------------------------------------
# list_members
# ---------------------------------------------------------------------------

class TestListMembers:
    def test_defaults(self, store):
        for name in ("Karim", "amina", "Zineb"):
            _create(store, name)
        page = list_members(store)
        assert page.page == 1
        assert page.page_size == 50
        assert page.total_count == 3
        assert page.total_pages == 1

    def test_search_case_insensitive_substring(self, store):
        _create(store, "Amina Benali")
        _create(store, "Karim")
        page = list_members(store, search="  BEN ")
        assert [m["full_name"] for m in page.members] == ["Amina Benali"]

    def test_search_metacharacters_literal(self, store):
        _create(store, "A.B")
        _create(store, "AxB")
        assert list_members(store, search=".").total_count == 1

    def test_unknown_sort_falls_back(self, store):
        _create(store, "B")
        _create(store, "A")
        page = list_members(store, sort="password")
        assert [m["full_name"] for m in page.members] == ["A", "B"]

    def test_descending(self, store):
        _create(store, "A", membershipId="1")
        _create(store, "B", membershipId="2")
        page = list_members(store, sort="membership_id", order="DESC")
        assert [m["membership_id"] for m in page.members] == [2, 1]

    def test_page_size_capped(self, store):
        assert list_members(store, size=5000).page_size == MAX_PAGE_SIZE

    @pytest.mark.parametrize("size", ["abc", 0, -1, None])
    def test_bad_page_size_uses_default(self, store, size):
        assert list_members(store, size=size).page_size == 50

    def test_page_clamped(self, store):
        for i in range(5):
            _create(store, f"M{i}")
        page = list_members(store, page=9, size=2)
        assert page.total_pages == 3
        assert page.page == 3
        assert [m["full_name"] for m in page.members] == ["M4"]

    def test_filters_allow_listed(self, store):
        _create(store, "A", gender="M")
        _create(store, "B", gender="F")
        page = list_members(store, filters={"gender": "F", "password": "x", "member_type": ""})
        assert page.filters == {"gender": "F"}
        assert [m["full_name"] for m in page.members] == ["B"]
