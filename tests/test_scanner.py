"""
Tests for opportunity scanning, aggregation, sorting and filtering.
"""

import asyncio

import pytest
from hypothesis import given, strategies as st

from sentinel.core.audit import AuditLog
from sentinel.core.models import FilterCriteria, OpportunityType, RiskLevel, YieldOpportunity
from sentinel.trading.scanner import (
    OpportunityAggregator,
    OpportunityScanner,
    ScannerError,
    filter_opportunities,
    sort_by_apy_desc,
)


class StaticScanner(OpportunityScanner):
    """Scanner that returns a fixed payload after an optional delay."""

    def __init__(self, name, opportunities=None, delay=0.0, error=None, timeout=10.0):
        super().__init__(timeout)
        self.name = name
        self.opportunities = opportunities or []
        self.delay = delay
        self.error = error

    async def fetch(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.opportunities

    def parse(self, payload):
        return list(payload)


class RaisingScanner(OpportunityScanner):
    """Scanner whose parse() has a bug."""

    name = "raising"

    async def fetch(self):
        return {"unexpected": True}

    def parse(self, payload):
        raise RuntimeError("adapter bug")


opportunity_strategy = st.builds(
    YieldOpportunity,
    protocol=st.sampled_from(["Marinade", "Kamino", "Jito", "Orca", "marginfi"]),
    name=st.text(min_size=1, max_size=8),
    type=st.sampled_from(list(OpportunityType)),
    apy=st.floats(min_value=0, max_value=200, allow_nan=False),
    tvl=st.floats(min_value=0, max_value=1e9, allow_nan=False),
    risk=st.sampled_from(list(RiskLevel)),
)

criteria_strategy = st.builds(
    FilterCriteria,
    min_apy=st.none() | st.floats(min_value=0, max_value=200, allow_nan=False),
    max_risk=st.none() | st.sampled_from(list(RiskLevel)),
    min_tvl=st.none() | st.floats(min_value=0, max_value=1e9, allow_nan=False),
    types=st.none() | st.frozensets(st.sampled_from(list(OpportunityType))),
)


class TestSortAndFilter:
    """Pure post-processing."""

    def test_sort_ties_broken_by_protocol(self, make_opportunity):
        b = make_opportunity(protocol="Beta", apy=5.0)
        a = make_opportunity(protocol="Alpha", apy=5.0)
        c = make_opportunity(protocol="Gamma", apy=9.0)

        assert sort_by_apy_desc([b, a, c]) == [c, a, b]

    def test_filter_scenario(self, make_opportunity):
        """min_apy 5 and max_risk medium keep only the medium 6% entry."""
        opps = [
            make_opportunity(protocol="A", apy=4.0, risk="low"),
            make_opportunity(protocol="B", apy=6.0, risk="medium"),
            make_opportunity(protocol="C", apy=9.0, risk="high"),
        ]
        result = filter_opportunities(opps, FilterCriteria(min_apy=5.0, max_risk=RiskLevel.MEDIUM))

        assert [o.protocol for o in result] == ["B"]
        assert len(opps) == 3

    def test_zero_is_a_real_bound(self, make_opportunity):
        opps = [make_opportunity(apy=0.0, tvl=0.0)]
        assert filter_opportunities(opps, FilterCriteria(min_apy=0.0, min_tvl=0.0)) == opps
        assert filter_opportunities(opps, FilterCriteria(min_tvl=0.01)) == []

    def test_empty_criteria_keeps_everything(self, make_opportunity):
        opps = [make_opportunity(apy=1.0), make_opportunity(apy=2.0)]
        assert filter_opportunities(opps, FilterCriteria()) == opps
        assert filter_opportunities(opps, None) == opps

    def test_types_allow_list(self, make_opportunity):
        staking = make_opportunity(type="staking")
        lending = make_opportunity(type="lending")
        result = filter_opportunities([staking, lending], FilterCriteria(types={"lending"}))
        assert result == [lending]

    @given(opps=st.lists(opportunity_strategy, max_size=20), criteria=criteria_strategy)
    def test_filter_is_ordered_subset(self, opps, criteria):
        result = filter_opportunities(opps, criteria)

        expected = [i for i, opp in enumerate(opps) if criteria.matches(opp)]
        assert [id(o) for o in result] == [id(opps[i]) for i in expected]
        for opp in result:
            if criteria.min_apy is not None:
                assert opp.apy >= criteria.min_apy
            if criteria.min_tvl is not None:
                assert opp.tvl >= criteria.min_tvl
            if criteria.max_risk is not None:
                assert opp.risk.rank <= criteria.max_risk.rank
            if criteria.types is not None:
                assert opp.type in criteria.types

    @given(opps=st.lists(opportunity_strategy, max_size=20))
    def test_sort_is_non_increasing(self, opps):
        result = sort_by_apy_desc(opps)

        assert len(result) == len(opps)
        for first, second in zip(result, result[1:]):
            assert first.apy >= second.apy
            if first.apy == second.apy:
                assert first.protocol <= second.protocol


class TestOpportunityScanner:
    """Adapter base class."""

    @pytest.mark.asyncio
    async def test_fetch_error_yields_empty(self):
        scanner = StaticScanner("broken", error=ScannerError("HTTP 500"))
        assert await scanner.scan() == []

    @pytest.mark.asyncio
    async def test_parse_error_yields_empty(self):
        class BadParse(StaticScanner):
            def parse(self, payload):
                raise KeyError("apy")

        assert await BadParse("bad").scan() == []

    @pytest.mark.asyncio
    async def test_scan_returns_parsed(self, make_opportunity):
        opp = make_opportunity()
        assert await StaticScanner("ok", [opp]).scan() == [opp]

    @pytest.mark.asyncio
    async def test_collect_raises(self):
        with pytest.raises(ScannerError, match="HTTP 500"):
            await StaticScanner("broken", error=ScannerError("HTTP 500")).collect()


class TestOpportunityAggregator:
    """Concurrent fan-out."""

    @pytest.mark.asyncio
    async def test_scan_all_sorted_union(self, audit, make_opportunity):
        """Two adapters merge into one list sorted by APY."""
        a = make_opportunity(protocol="Marinade", apy=7.0)
        b = make_opportunity(protocol="Kamino", type="liquidity", apy=12.0)
        aggregator = OpportunityAggregator(
            [StaticScanner("marinade", [a]), StaticScanner("kamino", [b])],
            audit,
        )

        assert await aggregator.scan_all() == [b, a]

    @pytest.mark.asyncio
    async def test_failing_adapter_isolated(self, audit, memory_store, make_opportunity):
        good = make_opportunity(protocol="Marinade", apy=7.0)
        aggregator = OpportunityAggregator(
            [StaticScanner("marinade", [good]), RaisingScanner()],
            audit,
        )

        result = await aggregator.scan_all()

        assert result == [good]
        failures = memory_store.actions_of("SCAN_FAILED")
        assert [f.details["scanner"] for f in failures] == ["raising"]

    @pytest.mark.asyncio
    async def test_adapter_fetch_failure_recorded(self, audit, memory_store, make_opportunity):
        """An adapter whose HTTP fetch fails is audited, not silently empty."""
        good = make_opportunity(protocol="A", apy=9.0)
        aggregator = OpportunityAggregator(
            [StaticScanner("a", [good]), StaticScanner("b", error=ScannerError("HTTP 500"))],
            audit,
        )

        result = await aggregator.scan_all()

        assert result == [good]
        failure = memory_store.actions_of("SCAN_FAILED")[0]
        assert failure.details["scanner"] == "b"
        assert "HTTP 500" in failure.details["reason"]
        assert memory_store.actions_of("OPPORTUNITY_SCAN")[0].details["failed"] == ["b"]

    @pytest.mark.asyncio
    async def test_slow_adapter_times_out(self, audit, memory_store, make_opportunity):
        fast = make_opportunity(protocol="Fast", apy=5.0)
        slow = make_opportunity(protocol="Slow", apy=50.0)
        aggregator = OpportunityAggregator(
            [StaticScanner("fast", [fast]), StaticScanner("slow", [slow], delay=5.0)],
            audit,
            scanner_timeout=0.05,
            deadline=2.0,
        )

        result = await aggregator.scan_all()

        assert result == [fast]
        failure = memory_store.actions_of("SCAN_FAILED")[0]
        assert failure.details == {"scanner": "slow", "reason": "timed out"}

    @pytest.mark.asyncio
    async def test_deadline_abandons_pending(self, audit, memory_store, make_opportunity):
        fast = make_opportunity(protocol="Fast", apy=5.0)
        aggregator = OpportunityAggregator(
            [StaticScanner("fast", [fast]), StaticScanner("slow", [fast], delay=5.0)],
            audit,
            scanner_timeout=10.0,
            deadline=0.05,
        )

        result = await aggregator.scan_all()

        assert result == [fast]
        assert "deadline" in memory_store.actions_of("SCAN_FAILED")[0].details["reason"]

    @pytest.mark.asyncio
    async def test_all_failing_yields_empty(self, audit):
        aggregator = OpportunityAggregator(
            [StaticScanner("a", error=ScannerError("down")), RaisingScanner()],
            audit,
        )
        assert await aggregator.scan_all() == []

    @pytest.mark.asyncio
    async def test_no_scanners(self, audit):
        assert await OpportunityAggregator([], audit).scan_all() == []

    @pytest.mark.asyncio
    async def test_scan_recorded(self, audit, memory_store, make_opportunity):
        opps = [make_opportunity(protocol="A", apy=3.0), make_opportunity(protocol="B", apy=4.0)]
        aggregator = OpportunityAggregator([StaticScanner("static", opps)], audit)

        await aggregator.scan_all()

        assert len(memory_store.yield_reports) == 2
        scan = memory_store.actions_of("OPPORTUNITY_SCAN")[0]
        assert scan.details["found"] == 2
        assert scan.details["best"]["protocol"] == "B"
        assert scan.details["failed"] == []

    @given(
        successes=st.lists(st.lists(opportunity_strategy, max_size=4), max_size=4),
        failures=st.integers(min_value=0, max_value=3),
    )
    def test_union_of_successes(self, successes, failures):
        """N adapters with k failing return exactly the union of the N-k successes."""
        scanners = [StaticScanner(f"ok{i}", opps) for i, opps in enumerate(successes)]
        scanners += [StaticScanner(f"bad{i}", error=ScannerError("down")) for i in range(failures)]
        aggregator = OpportunityAggregator(scanners, AuditLog(None))

        result = asyncio.run(aggregator.scan_all())

        expected = [opp for opps in successes for opp in opps]
        assert sorted(map(id, result)) == sorted(map(id, expected))
