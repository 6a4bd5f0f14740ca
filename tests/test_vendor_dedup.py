"""Tests for vendor duplicate detection and linking."""

import pytest

from pmpulse.common.models import Vendor
from pmpulse.datalayer.vendor_dedup import (
    VendorDeduplicationEngine,
    VendorLinkError,
    email_score,
    name_similarity,
    normalize_name,
    phones_match,
    rank_candidates,
    similarity,
)


@pytest.fixture
def dedup(session_manager):
    return VendorDeduplicationEngine(session_manager)


def add_vendors(session_manager, *rows):
    ids = []
    with session_manager.session_scope() as session:
        for n, row in enumerate(rows, start=1):
            vendor = Vendor(external_id=f"V{n}", **row)
            session.add(vendor)
            session.flush()
            ids.append(vendor.id)
    return ids


def get_vendor(session_manager, vendor_id):
    with session_manager.session_scope() as session:
        return session.get(Vendor, vendor_id)


# ============================================================================
# Scoring
# ============================================================================

def test_normalize_name_drops_suffixes_and_punctuation():
    assert normalize_name('  ABC Plumbing, LLC ') == 'abc plumbing'
    assert normalize_name('Smith & Sons Inc.') == 'smith sons'


def test_name_similarity_ignores_word_order_and_suffixes():
    assert name_similarity('ABC Plumbing LLC', 'Plumbing, ABC') == 1.0
    assert name_similarity('Acme', 'Acne') == 0.75
    assert name_similarity('Acme', None) is None


def test_phones_need_ten_digits():
    assert phones_match('(555) 123-4567', '555.123.4567')
    assert not phones_match('123-4567', '123-4567')
    assert not phones_match(None, '5551234567')


def test_email_score():
    assert email_score('Ops@ABC.com', 'ops@abc.com') == 0.15
    assert email_score('a@abcplumbing.com', 'b@abcplumbing.com') == 0.05
    assert email_score('a@gmail.com', 'b@gmail.com') == 0.0
    assert email_score(None, 'b@gmail.com') == 0.0


def test_similarity_combines_signals():
    a = Vendor(id=1, company_name='ABC Plumbing LLC', phone='(555) 123-4567',
               email='office@abcplumbing.com', contact_name='John Smith')
    b = Vendor(id=2, company_name='ABC Plumbing', phone='555-123-4567',
               email='billing@abcplumbing.com', contact_name='John Smith')

    score, reasons = similarity(a, b)

    assert score == pytest.approx(0.9)
    assert reasons == [
        'Similar company names (100% match)',
        'Same phone number',
        'Same email domain',
        'Similar contact names',
    ]


def test_rank_candidates_is_order_independent():
    vendors = [
        Vendor(id=3, company_name='Acme Roofing'),
        Vendor(id=1, company_name='Acme Roofing Inc'),
        Vendor(id=2, company_name='Acme Roofing Co'),
        Vendor(id=4, company_name='Zed Electric'),
    ]

    forward = rank_candidates(vendors, threshold=0.4)
    backward = rank_candidates(list(reversed(vendors)), threshold=0.4)

    assert [c.pair for c in forward] == [(1, 2), (1, 3), (2, 3)]
    assert [c.pair for c in backward] == [c.pair for c in forward]


def test_rank_candidates_respects_limit_and_threshold():
    vendors = [Vendor(id=n, company_name='Same Name') for n in range(1, 5)]
    assert len(rank_candidates(vendors, threshold=0.5, limit=2)) == 2
    assert rank_candidates(vendors, threshold=0.6) == []


# ============================================================================
# Linking
# ============================================================================

def test_link_points_at_root(session_manager, dedup):
    a, b, c = add_vendors(session_manager, {'company_name': 'A'}, {'company_name': 'B'}, {'company_name': 'C'})

    assert dedup.link_as_duplicate(b, a) == a
    assert dedup.link_as_duplicate(c, b) == a

    assert get_vendor(session_manager, c).canonical_vendor_id == a
    assert dedup.effective_vendor_id(c) == a
    assert dedup.group_vendor_ids(b) == [a, b, c]


def test_linking_a_canonical_moves_its_duplicates(session_manager, dedup):
    a, b, c = add_vendors(session_manager, {'company_name': 'A'}, {'company_name': 'B'}, {'company_name': 'C'})
    dedup.link_as_duplicate(b, a)

    dedup.link_as_duplicate(a, c)

    assert get_vendor(session_manager, a).canonical_vendor_id == c
    assert get_vendor(session_manager, b).canonical_vendor_id == c


def test_self_link_rejected(session_manager, dedup):
    (a,) = add_vendors(session_manager, {'company_name': 'A'})
    with pytest.raises(VendorLinkError):
        dedup.link_as_duplicate(a, a)


def test_cycle_rejected(session_manager, dedup):
    a, b = add_vendors(session_manager, {'company_name': 'A'}, {'company_name': 'B'})
    dedup.link_as_duplicate(b, a)

    with pytest.raises(VendorLinkError):
        dedup.link_as_duplicate(a, b)
    assert get_vendor(session_manager, a).canonical_vendor_id is None


def test_unknown_vendor_rejected(session_manager, dedup):
    (a,) = add_vendors(session_manager, {'company_name': 'A'})
    with pytest.raises(VendorLinkError):
        dedup.link_as_duplicate(a, 999)
    with pytest.raises(VendorLinkError):
        dedup.unlink(999)


def test_unlink(session_manager, dedup):
    a, b = add_vendors(session_manager, {'company_name': 'A'}, {'company_name': 'B'})
    dedup.link_as_duplicate(b, a)

    dedup.unlink(b)

    assert dedup.effective_vendor_id(b) == b
    assert dedup.group_vendor_ids(a) == [a]


# ============================================================================
# Analysis
# ============================================================================

def test_find_potential_duplicates_ignores_linked_vendors(session_manager, dedup):
    a, b, c = add_vendors(
        session_manager,
        {'company_name': 'Bright Electric LLC', 'phone': '555-000-1111'},
        {'company_name': 'Bright Electric', 'phone': '(555) 000-1111'},
        {'company_name': 'Bright Electric Inc', 'phone': '5550001111'},
    )
    assert len(dedup.find_potential_duplicates()) == 3

    dedup.link_as_duplicate(c, a)

    assert [cand.pair for cand in dedup.find_potential_duplicates()] == [(a, b)]


def test_run_analysis_stores_results(session_manager, dedup):
    add_vendors(
        session_manager,
        {'company_name': 'Green Lawn Care', 'email': 'x@greenlawn.com'},
        {'company_name': 'Green Lawn Care LLC', 'email': 'y@greenlawn.com'},
        {'company_name': 'Harbor Painting'},
    )
    analysis = dedup.create_analysis(threshold=0.5, limit=10, requested_by='tester')
    assert analysis.status == 'pending'

    done = dedup.run_analysis(analysis.id)

    assert done.status == 'completed'
    assert done.total_vendors == 3
    assert done.comparisons_made == 3
    assert done.duplicates_found == 1
    assert done.results[0]['vendor1']['company_name'] == 'Green Lawn Care'
    assert 'Same email domain' in done.results[0]['match_reasons']

    with pytest.raises(ValueError):
        dedup.run_analysis(analysis.id)
