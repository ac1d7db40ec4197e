"""
tests/test_invite_parsing.py — Bulk Invite Input Parsing
=========================================================
"""

from __future__ import annotations

from changemaker.engine.invites import (
    InviteItem,
    is_valid_email,
    normalize_items,
    parse_json_items,
    parse_text_list,
)


class TestTextList:
    def test_email_role_and_bare_email(self):
        items = parse_text_list("a@x.com,ADMIN\nb@x.com")
        assert items == [
            InviteItem(email="a@x.com", role="ADMIN"),
            InviteItem(email="b@x.com", role="PARTICIPANT"),
        ]

    def test_name_column_and_blank_lines(self):
        items = parse_text_list("\n  carol@x.com , manager , Carol Diaz \n\n")
        assert items == [InviteItem(email="carol@x.com", role="MANAGER", name="Carol Diaz")]

    def test_unknown_role_becomes_participant(self):
        (item,) = parse_text_list("dave@x.com,owner")
        assert item.role == "PARTICIPANT"


class TestJsonItems:
    def test_bare_list(self):
        items = parse_json_items([{"email": "a@x.com", "role": "admin", "name": "Ann"}])
        assert items == [InviteItem(email="a@x.com", role="ADMIN", name="Ann")]

    def test_items_wrapper(self):
        items = parse_json_items({"items": [{"email": "a@x.com"}, "junk"]})
        assert items == [InviteItem(email="a@x.com")]

    def test_unusable_bodies_are_empty(self):
        assert parse_json_items(None) == []
        assert parse_json_items({"emails": []}) == []
        assert parse_json_items("a@x.com") == []


class TestNormalize:
    def test_lowercases_and_drops_blank(self):
        items = normalize_items([
            InviteItem(email="  Ann@Example.COM "),
            InviteItem(email="   "),
            InviteItem(email="b@x.com", role="nonsense", name="  "),
        ])
        assert items == [
            InviteItem(email="ann@example.com"),
            InviteItem(email="b@x.com", role="PARTICIPANT", name=None),
        ]

    def test_email_validation(self):
        assert is_valid_email("a@x.com")
        assert not is_valid_email("not-an-email")
        assert not is_valid_email("a@x")
        assert not is_valid_email("a b@x.com")
