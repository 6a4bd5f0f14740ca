"""
Vendor duplicate detection and canonical linking.

The same vendor is often entered several times in AppFolio ("ABC Plumbing",
"ABC Plumbing LLC"). Candidates are scored pairwise; confirmed duplicates
point at a canonical vendor through canonical_vendor_id so analytics can
aggregate them. Links always point at a root, so a group is at most one
level deep.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fuzzywuzzy import fuzz
from sqlalchemy.orm import Session

from pmpulse.common.data_utils import digits_only
from pmpulse.common.date_utils import utc_now
from pmpulse.common.models import Vendor
from pmpulse.common.session import SessionManager
from pmpulse.scheduler.models import VendorDuplicateAnalysis


logger = logging.getLogger(__name__)


# Free-mail providers never count as a shared company domain
COMMON_EMAIL_DOMAINS = frozenset({
    'gmail.com', 'yahoo.com', 'hotmail.com', 'outlook.com', 'aol.com', 'icloud.com',
})

COMPANY_SUFFIXES = (
    'llc', 'inc', 'corp', 'co', 'ltd', 'company', 'corporation', 'incorporated', 'limited',
)

_SUFFIX_PATTERN = re.compile(r'\b(' + '|'.join(COMPANY_SUFFIXES) + r')\b')
_NON_ALNUM = re.compile(r'[^a-z0-9\s]')
_WHITESPACE = re.compile(r'\s+')

NAME_WEIGHT = 0.5
PHONE_SCORE = 0.25
EMAIL_EXACT_SCORE = 0.15
EMAIL_DOMAIN_SCORE = 0.05
CONTACT_WEIGHT = 0.1
CONTACT_MIN_SIMILARITY = 0.7


class VendorLinkError(ValueError):
    """Rejected link: self link, cycle, or unknown vendor."""
    pass


@dataclass
class DuplicateCandidate:
    """One scored vendor pair; vendor_a has the lower id."""
    vendor_a: Vendor
    vendor_b: Vendor
    score: float
    reasons: List[str] = field(default_factory=list)

    @property
    def pair(self) -> Tuple[int, int]:
        return self.vendor_a.id, self.vendor_b.id

    @staticmethod
    def _vendor_dict(vendor: Vendor) -> Dict[str, Any]:
        return {
            'id': vendor.id,
            'company_name': vendor.company_name,
            'contact_name': vendor.contact_name,
            'email': vendor.email,
            'phone': vendor.phone,
            'vendor_trades': vendor.vendor_trades,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'vendor1': self._vendor_dict(self.vendor_a),
            'vendor2': self._vendor_dict(self.vendor_b),
            'similarity': self.score,
            'match_reasons': list(self.reasons),
        }


# ============================================================================
# Scoring
# ============================================================================

def normalize_name(value: str) -> str:
    """Lowercase, drop company suffixes and punctuation, collapse whitespace."""
    value = value.strip().lower()
    value = _SUFFIX_PATTERN.sub('', value)
    value = _NON_ALNUM.sub('', value)
    return _WHITESPACE.sub(' ', value).strip()


def name_similarity(a: Optional[str], b: Optional[str]) -> Optional[float]:
    """Token-sort similarity of two normalized names in [0, 1], None when either is empty."""
    if not a or not b:
        return None
    return fuzz.token_sort_ratio(normalize_name(a), normalize_name(b)) / 100.0


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    digits_a, digits_b = digits_only(a), digits_only(b)
    return len(digits_a) >= 10 and digits_a == digits_b


def email_domain(email: str) -> Optional[str]:
    _, at, domain = email.rpartition('@')
    if not at:
        return None
    return domain or None


def email_score(a: Optional[str], b: Optional[str]) -> float:
    """0.15 for the same address, 0.05 for the same non-free-mail domain."""
    if not a or not b:
        return 0.0
    a, b = a.strip().lower(), b.strip().lower()
    if a == b:
        return EMAIL_EXACT_SCORE
    domain = email_domain(a)
    if domain and domain == email_domain(b) and domain not in COMMON_EMAIL_DOMAINS:
        return EMAIL_DOMAIN_SCORE
    return 0.0


def similarity(a: Vendor, b: Vendor) -> Tuple[float, List[str]]:
    """
    Score two vendors as potential duplicates.

    Args:
        a: First vendor
        b: Second vendor

    Returns:
        Tuple of (score in [0, 1] rounded to 3 places, human-readable reasons)
    """
    score = 0.0
    reasons: List[str] = []

    name_score = name_similarity(a.company_name, b.company_name)
    if name_score is not None:
        score += name_score * NAME_WEIGHT
        if name_score > 0.6:
            reasons.append(f"Similar company names ({round(name_score * 100)}% match)")

    if phones_match(a.phone, b.phone):
        score += PHONE_SCORE
        reasons.append("Same phone number")

    mail = email_score(a.email, b.email)
    if mail:
        score += mail
        reasons.append("Same email address" if mail == EMAIL_EXACT_SCORE else "Same email domain")

    contact_score = name_similarity(a.contact_name, b.contact_name)
    if contact_score is not None and contact_score > CONTACT_MIN_SIMILARITY:
        score += contact_score * CONTACT_WEIGHT
        if contact_score > 0.8:
            reasons.append("Similar contact names")

    return round(min(max(score, 0.0), 1.0), 3), reasons


def rank_candidates(vendors: Sequence[Vendor], threshold: float = 0.6, limit: int = 50) -> List[DuplicateCandidate]:
    """
    Pairwise scan of vendors, highest score first.

    Ties are ordered by (lower id, higher id) so the output never depends
    on input order.
    """
    candidates = []
    for i, first in enumerate(vendors):
        for second in vendors[i + 1:]:
            score, reasons = similarity(first, second)
            if score >= threshold:
                low, high = (first, second) if first.id < second.id else (second, first)
                candidates.append(DuplicateCandidate(low, high, score, reasons))

    candidates.sort(key=lambda c: (-c.score, c.pair))
    return candidates[:limit]


# ============================================================================
# Engine
# ============================================================================

class VendorDeduplicationEngine:
    """Finds duplicate candidates and maintains canonical links."""

    def __init__(self, session_manager: SessionManager):
        self.session_manager = session_manager

    def canonical_vendors(self) -> List[Vendor]:
        with self.session_manager.session_scope() as session:
            return (
                session.query(Vendor)
                .filter(Vendor.canonical_vendor_id.is_(None))
                .order_by(Vendor.company_name, Vendor.id)
                .all()
            )

    def find_potential_duplicates(self, threshold: float = 0.6, limit: int = 50) -> List[DuplicateCandidate]:
        """
        Rank canonical vendor pairs scoring at least `threshold`.

        Args:
            threshold: Minimum similarity score (0-1)
            limit: Maximum number of pairs returned

        Returns:
            List of DuplicateCandidate, deterministic for a given vendor set
        """
        vendors = self.canonical_vendors()
        candidates = rank_candidates(vendors, threshold, limit)
        logger.info(f"Compared {len(vendors)} canonical vendors: {len(candidates)} candidates >= {threshold}")
        return candidates

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    @staticmethod
    def _lock(session: Session, vendor_id: int) -> Vendor:
        vendor = session.get(Vendor, vendor_id, with_for_update=True)
        if vendor is None:
            raise VendorLinkError(f"Vendor {vendor_id} does not exist")
        return vendor

    @classmethod
    def _resolve_root(cls, session: Session, vendor: Vendor) -> Vendor:
        seen = {vendor.id}
        while vendor.canonical_vendor_id is not None:
            if vendor.canonical_vendor_id in seen:
                raise VendorLinkError(f"Vendor {vendor.id} is part of a canonical link cycle")
            seen.add(vendor.canonical_vendor_id)
            vendor = cls._lock(session, vendor.canonical_vendor_id)
        return vendor

    def link_as_duplicate(self, vendor_id: int, canonical_id: int) -> int:
        """
        Mark a vendor as a duplicate of another.

        The target is resolved to its root canonical first, and any vendors
        already pointing at `vendor_id` are moved to that root.

        Args:
            vendor_id: Vendor to mark as duplicate
            canonical_id: Vendor it duplicates

        Returns:
            int: The root canonical id the vendor now points at

        Raises:
            VendorLinkError: On a self link, a cycle, or an unknown vendor
        """
        if vendor_id == canonical_id:
            raise VendorLinkError(f"Vendor {vendor_id} cannot be linked to itself")

        with self.session_manager.session_scope() as session:
            vendor = self._lock(session, vendor_id)
            root = self._resolve_root(session, self._lock(session, canonical_id))
            if root.id == vendor.id:
                raise VendorLinkError(
                    f"Linking vendor {vendor_id} to {canonical_id} would create a cycle"
                )

            vendor.canonical_vendor_id = root.id
            moved = (
                session.query(Vendor)
                .filter(Vendor.canonical_vendor_id == vendor.id)
                .with_for_update()
                .all()
            )
            for duplicate in moved:
                duplicate.canonical_vendor_id = root.id
            root_id = root.id

        logger.info(
            f"Linked vendor {vendor_id} -> {root_id}"
            + (f" (re-pointed {len(moved)} duplicates)" if moved else "")
        )
        return root_id

    def unlink(self, vendor_id: int) -> None:
        """Clear a vendor's canonical link. Its former group members keep theirs."""
        with self.session_manager.session_scope() as session:
            vendor = self._lock(session, vendor_id)
            previous = vendor.canonical_vendor_id
            vendor.canonical_vendor_id = None
        logger.info(f"Unlinked vendor {vendor_id} from {previous}")

    def effective_vendor_id(self, vendor_id: int) -> int:
        """Canonical id for a duplicate, the vendor's own id otherwise."""
        with self.session_manager.session_scope() as session:
            vendor = session.get(Vendor, vendor_id)
            if vendor is None:
                raise VendorLinkError(f"Vendor {vendor_id} does not exist")
            return vendor.effective_vendor_id

    def group_vendor_ids(self, vendor_id: int) -> List[int]:
        """Ids of the canonical vendor and all its duplicates, sorted."""
        root_id = self.effective_vendor_id(vendor_id)
        with self.session_manager.session_scope() as session:
            rows = session.query(Vendor.id).filter(Vendor.canonical_vendor_id == root_id).all()
        return sorted([root_id] + [row.id for row in rows])

    # ------------------------------------------------------------------
    # Background analysis
    # ------------------------------------------------------------------

    def create_analysis(self, threshold: float = 0.6, limit: int = 50,
                        requested_by: Optional[str] = None) -> VendorDuplicateAnalysis:
        with self.session_manager.session_scope() as session:
            analysis = VendorDuplicateAnalysis(
                status='pending', threshold=threshold, limit=limit, requested_by=requested_by
            )
            session.add(analysis)
            session.flush()
        logger.info(f"Created vendor duplicate analysis {analysis.id} (threshold={threshold}, limit={limit})")
        return analysis

    def run_analysis(self, analysis_id: int) -> VendorDuplicateAnalysis:
        """
        Execute a pending analysis and store its results.

        Raises:
            ValueError: If the analysis does not exist or is not pending
        """
        with self.session_manager.session_scope() as session:
            analysis = session.get(VendorDuplicateAnalysis, analysis_id, with_for_update=True)
            if analysis is None:
                raise ValueError(f"VendorDuplicateAnalysis {analysis_id} does not exist")
            if analysis.status != 'pending':
                raise ValueError(f"VendorDuplicateAnalysis {analysis_id} is {analysis.status}, expected pending")
            analysis.status = 'processing'
            analysis.started_at = utc_now()
            threshold, limit = float(analysis.threshold), analysis.limit

        logger.info(f"Starting vendor duplicate analysis {analysis_id}")
        try:
            vendors = self.canonical_vendors()
            candidates = rank_candidates(vendors, threshold, limit)
        except Exception as e:
            logger.error(f"Vendor duplicate analysis {analysis_id} failed: {e}")
            with self.session_manager.session_scope() as session:
                analysis = session.get(VendorDuplicateAnalysis, analysis_id)
                analysis.status = 'failed'
                analysis.error_message = str(e)
                analysis.completed_at = utc_now()
            raise

        total = len(vendors)
        with self.session_manager.session_scope() as session:
            analysis = session.get(VendorDuplicateAnalysis, analysis_id)
            analysis.status = 'completed'
            analysis.total_vendors = total
            analysis.comparisons_made = total * (total - 1) // 2
            analysis.duplicates_found = len(candidates)
            analysis.results = [c.to_dict() for c in candidates]
            analysis.completed_at = utc_now()

        logger.info(f"Vendor duplicate analysis {analysis_id} completed: {len(candidates)} potential duplicates")
        return analysis
