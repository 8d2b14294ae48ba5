"""
Result Verifier - Compares the expected model against the observed model
under one delivery guarantee
"""
import logging
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Set
from ..errors import VerificationMismatchError
from ..interfaces import IResultVerifier
from ..models import (
    DEFAULT_ORDERING_KEY, ExpectedModel, Guarantee, ObservedModel, VerificationResult
)

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)
logger = logging.getLogger(__name__)


class ResultVerifier(IResultVerifier):
    """
    Checks guarantees and builds a diagnostic on failure: both counts and a
    bounded sample of the symmetric difference.
    """

    def __init__(self, sample_size: int = 10):
        self.sample_size = sample_size

    def verify(self, expected: ExpectedModel, observed: ObservedModel, guarantee: Guarantee) -> VerificationResult:
        checks = {
            Guarantee.EXACT_MULTISET: self._verify_multiset,
            Guarantee.SIZE_ONLY: self._verify_size,
            Guarantee.EXACT_SEQUENCE: self._verify_sequence,
            Guarantee.PER_KEY_ORDER: self._verify_per_key_order,
            Guarantee.ZERO_OVERLAP: self._verify_zero_overlap,
            Guarantee.KEY_EXCLUSIVITY: self._verify_key_exclusivity,
            Guarantee.RECORD_IDS: self._verify_record_ids,
        }
        check = checks.get(guarantee)
        if check is None:
            raise ValueError(f"Unsupported guarantee: {guarantee}")

        result = check(expected, observed)
        if result.passed:
            logger.info(f"Verification {result.summary()}")
        else:
            logger.error(f"Verification {result.summary()}")
        return result

    def verify_all(self, expected: ExpectedModel, observed: ObservedModel,
                   guarantees: Iterable[Guarantee]) -> List[VerificationResult]:
        return [self.verify(expected, observed, guarantee) for guarantee in guarantees]

    def verify_disjoint(self, set_a: Iterable[Any], set_b: Iterable[Any],
                        label_a: str = "a", label_b: str = "b") -> VerificationResult:
        """Zero overlap between two arbitrary delivery sets"""
        set_a, set_b = set(set_a), set(set_b)
        overlap = set_a & set_b
        return VerificationResult(
            guarantee=Guarantee.ZERO_OVERLAP,
            passed=not overlap,
            expected_count=len(set_a),
            observed_count=len(set_b),
            unexpected=self._sample(overlap),
            message=f"{len(overlap)} records in both {label_a} and {label_b}" if overlap else "",
            details={'overlap': len(overlap)}
        )

    @staticmethod
    def assert_passed(result: VerificationResult) -> VerificationResult:
        """Raise VerificationMismatchError carrying the diagnostic if the check failed"""
        if not result.passed:
            raise VerificationMismatchError(result.summary(), details={
                'guarantee': result.guarantee.value,
                'expected_count': result.expected_count,
                'observed_count': result.observed_count,
                'missing_sample': result.missing,
                'unexpected_sample': result.unexpected,
                **result.details
            })
        return result

    def _verify_multiset(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        want = expected.payload_multiset()
        got = observed.payload_multiset()
        missing = want - got
        unexpected = got - want
        passed = not missing and not unexpected
        message = ""
        if not passed:
            message = (f"{sum(missing.values())} missing, {sum(unexpected.values())} unexpected")
        return VerificationResult(
            guarantee=Guarantee.EXACT_MULTISET,
            passed=passed,
            expected_count=len(expected),
            observed_count=len(observed),
            missing=self._sample(missing.elements()),
            unexpected=self._sample(unexpected.elements()),
            message=message
        )

    def _verify_size(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        # Summed over members, so a record acked by two members counts twice
        size = observed.group_size()
        passed = len(expected) == size
        return VerificationResult(
            guarantee=Guarantee.SIZE_ONLY,
            passed=passed,
            expected_count=len(expected),
            observed_count=size,
            message="" if passed else f"size differs by {size - len(expected):+d}",
            details={'member_counts': observed.member_counts()}
        )

    def _verify_sequence(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        want = expected.payload_sequence()
        got = observed.payload_sequence()

        divergence: Optional[int] = None
        for index, (w, g) in enumerate(zip(want, got)):
            if w != g:
                divergence = index
                break
        if divergence is None and len(want) != len(got):
            divergence = min(len(want), len(got))

        if divergence is None:
            return VerificationResult(
                guarantee=Guarantee.EXACT_SEQUENCE,
                passed=True,
                expected_count=len(want),
                observed_count=len(got)
            )

        end = divergence + self.sample_size
        return VerificationResult(
            guarantee=Guarantee.EXACT_SEQUENCE,
            passed=False,
            expected_count=len(want),
            observed_count=len(got),
            missing=want[divergence:end],
            unexpected=got[divergence:end],
            message=f"sequences diverge at position {divergence}",
            details={'divergence_index': divergence}
        )

    def _verify_per_key_order(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        violations: List[str] = []

        # Write order: ids for one key must strictly increase
        positions: Dict[Any, int] = {}
        for key, records in expected.by_key().items():
            for position, record in enumerate(records):
                positions[record.record_id] = position
            ids = [r.record_id for r in records]
            try:
                for previous, current in zip(ids, ids[1:]):
                    if not previous < current:
                        violations.append(f"key {key}: write order {previous} then {current}")
            except TypeError as e:
                violations.append(f"key {key}: record ids are not comparable ({e})")

        # Delivery order: each member sees one key's records in write order
        for member, deliveries in observed.delivery_order.items():
            last_seen: Dict[str, int] = {}
            for record in deliveries:
                position = positions.get(record.record_id)
                if position is None:
                    continue
                previous = last_seen.get(record.ordering_key)
                if previous is not None and position < previous:
                    violations.append(
                        f"member {member} key {record.ordering_key}: {record.record_id} delivered after a later record"
                    )
                last_seen[record.ordering_key] = position

        return VerificationResult(
            guarantee=Guarantee.PER_KEY_ORDER,
            passed=not violations,
            expected_count=len(expected),
            observed_count=len(observed),
            unexpected=violations[:self.sample_size],
            message=f"{len(violations)} ordering violations" if violations else "",
            details={'violations': len(violations)}
        )

    def _verify_zero_overlap(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        overlaps: Set[Any] = set()
        pairs: List[str] = []
        members = sorted(observed.per_member)
        for member_a, member_b in combinations(members, 2):
            shared = observed.member_record_ids(member_a) & observed.member_record_ids(member_b)
            if shared:
                overlaps |= shared
                pairs.append(f"{member_a}/{member_b}")

        return VerificationResult(
            guarantee=Guarantee.ZERO_OVERLAP,
            passed=not overlaps,
            expected_count=len(expected),
            observed_count=sum(observed.member_counts().values()),
            unexpected=self._sample(overlaps),
            message=f"{len(overlaps)} records acked by more than one member ({', '.join(pairs)})" if overlaps else "",
            details={'member_counts': observed.member_counts()}
        )

    def _verify_key_exclusivity(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        shared_keys = {
            key: sorted(members)
            for key, members in observed.members_by_key().items()
            if key != DEFAULT_ORDERING_KEY and len(members) > 1
        }
        return VerificationResult(
            guarantee=Guarantee.KEY_EXCLUSIVITY,
            passed=not shared_keys,
            expected_count=len(expected),
            observed_count=len(observed),
            unexpected=self._sample(f"{key}: {', '.join(members)}" for key, members in shared_keys.items()),
            message=f"{len(shared_keys)} ordering keys served by more than one member" if shared_keys else "",
            details={'member_counts': observed.member_counts()}
        )

    def _verify_record_ids(self, expected: ExpectedModel, observed: ObservedModel) -> VerificationResult:
        want = expected.record_ids()
        got = observed.record_ids()
        missing = want - got
        unexpected = got - want
        passed = not missing and not unexpected
        return VerificationResult(
            guarantee=Guarantee.RECORD_IDS,
            passed=passed,
            expected_count=len(want),
            observed_count=len(got),
            missing=self._sample(missing),
            unexpected=self._sample(unexpected),
            message="" if passed else f"{len(missing)} missing, {len(unexpected)} unexpected"
        )

    def _sample(self, items: Iterable[Any]) -> List[Any]:
        return sorted(items, key=repr)[:self.sample_size]
