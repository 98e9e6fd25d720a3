"""
Tests for species get-or-create resolution.
"""

import pytest
from sqlmodel import select

from smartplant.core.exceptions import ValidationError
from smartplant.db.models import Species


class TestResolve:
    """Test resolve(): lookup with create-on-miss."""

    def test_creates_unseen_species(self, session, resolver):
        species_id = resolver.resolve(session, "Rafflesia arnoldii")

        species = session.get(Species, species_id)
        assert species.scientific_name == "Rafflesia arnoldii"
        assert species.image_url is None

    def test_returns_same_id_for_known_species(self, session, resolver):
        first = resolver.resolve(session, "Nepenthes rajah")
        second = resolver.resolve(session, "Nepenthes rajah")

        assert first == second
        rows = session.exec(select(Species).where(Species.scientific_name == "Nepenthes rajah")).all()
        assert len(rows) == 1

    def test_trims_whitespace(self, session, resolver):
        first = resolver.resolve(session, "  Ficus elastica ")
        second = resolver.resolve(session, "Ficus elastica")
        assert first == second

    def test_lookup_is_case_sensitive(self, session, resolver):
        first = resolver.resolve(session, "Ficus elastica")
        second = resolver.resolve(session, "ficus elastica")
        assert first != second

    @pytest.mark.parametrize("name", ["", "   ", None])
    def test_rejects_empty_name(self, session, resolver, name):
        with pytest.raises(ValidationError):
            resolver.resolve(session, name)

    def test_lost_insert_race_rereads_winner(self, session, resolver, monkeypatch):
        """
        A concurrent creator inserts the same name between our lookup and
        our insert. The unique constraint fires and the winner's id is used.
        """
        winner = Species(scientific_name="Amorphophallus titanum")
        session.add(winner)
        session.flush()

        real_lookup = resolver.lookup
        calls = []

        def stale_first_lookup(sess, name):
            calls.append(name)
            if len(calls) == 1:
                return None
            return real_lookup(sess, name)

        monkeypatch.setattr(resolver, "lookup", stale_first_lookup)

        species_id = resolver.resolve(session, "Amorphophallus titanum")

        assert species_id == winner.species_id
        assert len(calls) == 2
        rows = session.exec(select(Species).where(Species.scientific_name == "Amorphophallus titanum")).all()
        assert len(rows) == 1

    def test_outer_rollback_discards_created_species(self, session, resolver):
        """Rolling back the caller's transaction removes a species created by resolve()."""
        resolver.resolve(session, "Welwitschia mirabilis")
        session.rollback()

        assert resolver.lookup(session, "Welwitschia mirabilis") is None


class TestCreate:
    """Test create(): explicit insert with metadata."""

    def test_creates_with_metadata(self, session, resolver):
        species = resolver.create(
            session,
            "Nepenthes rajah",
            common_name="Giant pitcher plant",
            is_endangered=True,
            description="Largest pitcher of its genus",
        )

        assert species.species_id is not None
        assert species.common_name == "Giant pitcher plant"
        assert species.is_endangered is True

    def test_existing_name_is_rejected(self, session, resolver):
        resolver.resolve(session, "Nepenthes rajah")

        with pytest.raises(ValidationError) as exc_info:
            resolver.create(session, "Nepenthes rajah")

        assert "already exists" in exc_info.value.message

    def test_get_unknown_returns_none(self, session, resolver):
        assert resolver.get(session, 9999) is None
