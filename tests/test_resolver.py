from batch_cognito.index import IdentityIndex
from batch_cognito.models import IdentityRecord, OutcomeKind
from batch_cognito.resolver import resolve


def test_resolves_case_and_whitespace_insensitively(index):
    for variant in ("Alice@Example.com", " alice@example.com ", "alice@example.com"):
        resolution = resolve(index, variant)
        assert resolution.resolved
        assert resolution.opaque_id == "ID1"
        assert resolution.email == "alice@example.com"


def test_unknown_user(index):
    resolution = resolve(index, "carol@example.com")
    assert not resolution.resolved
    assert resolution.unresolved is OutcomeKind.UNKNOWN_USER


def test_ambiguous_email_is_not_guessed():
    index = IdentityIndex.from_records([
        IdentityRecord("ID1", "dana@example.com"),
        IdentityRecord("ID2", "dana@example.com"),
    ])
    resolution = resolve(index, "dana@example.com")
    assert resolution.opaque_id is None
    assert resolution.unresolved is OutcomeKind.AMBIGUOUS_EMAIL
