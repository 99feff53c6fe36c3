# tests/services/test_lender_matcher.py
"""
Tests for lender qualification

Coverage:
- Match score bonuses, penalties and bounds
- Time-in-business from MM/DD/YYYY start dates
- Amount / factor rate / term extraction from fields and free text
- Normalizing qualified / nonQualified verdicts
- Ranking and display / SMS formatting
- Match-set replacement and qualification service errors

Run with: pytest tests/services/test_lender_matcher.py -v
"""

import pytest
from datetime import date
from uuid import uuid4
from unittest.mock import AsyncMock, Mock, patch

import httpx

from mcacrm.exceptions import ExternalServiceError, PreconditionFailed
from mcacrm.models import LenderMatch
from mcacrm.services.lender_matcher import LenderQualificationService, lender_matcher


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def strong_profile():
    return {'monthlyRevenue': 40000, 'fico': 720, 'tib': 36, 'negativeDays': 0, 'position': 2}


@pytest.fixture
def weak_profile():
    return {'monthlyRevenue': 0, 'fico': 0, 'tib': 0, 'negativeDays': 40, 'position': 1}


@pytest.fixture
def qualification_service(mock_db, sample_conversation):
    service = LenderQualificationService(mock_db, webhook_url="https://qualify.test/hook", timeout=5)
    service.leads.get_conversation = AsyncMock(return_value=sample_conversation)
    return service


def mock_http_client(response=None, error=None):
    client = Mock()
    client.post = AsyncMock(return_value=response, side_effect=error)
    return client


# ============================================================================
# SCORING
# ============================================================================

class TestMatchScore:

    def test_score_capped_at_100(self, strong_profile):
        entry = {'Lender Name': 'Alpha', 'Tier': 1, 'isPreferred': True, 'maxAmount': 500000}

        assert lender_matcher.calculate_match_score(entry, strong_profile) == 100

    def test_penalties_applied(self, weak_profile):
        assert lender_matcher.calculate_match_score({}, weak_profile) == 40

    def test_tier_bonus(self, weak_profile):
        weak_profile['negativeDays'] = 0

        assert lender_matcher.calculate_match_score({'Tier': 1}, weak_profile) == 100
        assert lender_matcher.calculate_match_score({'tier': 3}, weak_profile) == 80
        assert lender_matcher.calculate_match_score({'tier': 9}, weak_profile) == 60

    def test_numeric_string_tier_counts(self, weak_profile):
        weak_profile['negativeDays'] = 0

        assert lender_matcher.calculate_match_score({'Tier': '2'}, weak_profile) == 90
        assert lender_matcher.calculate_match_score({'Tier': 'A'}, weak_profile) == 50

    def test_revenue_bonus_needs_three_months_coverage(self, weak_profile):
        weak_profile.update(negativeDays=0, monthlyRevenue=50000)

        assert lender_matcher.calculate_match_score({'maxAmount': 150000}, weak_profile) == 65
        assert lender_matcher.calculate_match_score({'maxAmount': 149999}, weak_profile) == 50

    def test_fico_and_tib_steps(self):
        profile = {'fico': 660, 'tib': 12, 'negativeDays': 20}

        assert lender_matcher.calculate_match_score({}, profile) == 55


class TestTimeInBusiness:

    def test_whole_months(self):
        assert lender_matcher.calculate_tib('01/15/2020', today=date(2024, 3, 1)) == 50

    @pytest.mark.parametrize("start", ['05/01/2030', '13/01/2020', '2020-01-15', '', None])
    def test_invalid_or_future_dates_are_zero(self, start):
        assert lender_matcher.calculate_tib(start, today=date(2024, 3, 1)) == 0


class TestExtraction:

    def test_explicit_amount_wins(self):
        entry = {'maxAmount': 80000, 'description': 'Up to $150k'}

        assert lender_matcher.extract_max_amount(entry) == 80000

    @pytest.mark.parametrize("text,expected", [
        ('Up to $150k', 150000),
        ('Funds up to 250,000 for tier 1', 250000),
        ('Max 75 keep it simple', 75),
        ('No amount listed', None),
    ])
    def test_amount_from_description(self, text, expected):
        assert lender_matcher.extract_max_amount({'description': text}) == expected

    def test_factor_rate(self):
        assert lender_matcher.extract_factor_rate({'description': 'Rates from 1.35x'}) == 1.35
        assert lender_matcher.extract_factor_rate({'factorRate': 1.2}) == 1.2
        assert lender_matcher.extract_factor_rate({'description': 'ask'}) is None

    def test_term_months_defaults_to_12(self):
        assert lender_matcher.extract_term_months({'description': 'term 9 months'}) == 9
        assert lender_matcher.extract_term_months({'termMonths': 6}) == 6
        assert lender_matcher.extract_term_months({}) == 12

    def test_requirements_collected(self):
        entry = {'minFico': 600, 'excluded_states': ['CA'], 'other': 1}

        assert lender_matcher.extract_requirements(entry) == {
            'min_fico': 600,
            'states_excluded': ['CA'],
        }


class TestNormalizeResults:

    def test_qualified_and_non_qualified_rows(self, strong_profile):
        results = {
            'qualified': [{'Lender Name': 'Alpha', 'Tier': '2', 'maxAmount': 100000}, 'junk'],
            'nonQualified': [
                {'lender': 'Beta', 'blockingRule': 'Min FICO 650'},
                {'name': 'Gamma'},
            ],
        }

        processed = lender_matcher.normalize_results(results, strong_profile)

        assert processed['summary'] == {'qualified': 1, 'non_qualified': 2, 'total_processed': 3}
        alpha = processed['qualified'][0]
        assert alpha['lender_name'] == 'Alpha'
        assert alpha['tier'] == 2
        assert alpha['position'] == 2
        assert alpha['qualified'] is True
        assert alpha['blocking_reason'] is None
        assert 0 <= alpha['match_score'] <= 100
        beta, gamma = processed['non_qualified']
        assert beta['blocking_reason'] == 'Min FICO 650'
        assert beta['match_score'] is None
        assert gamma['lender_name'] == 'Gamma'
        assert gamma['blocking_reason'] == 'Criteria not met'

    def test_rows_fit_lender_match_columns(self, strong_profile):
        processed = lender_matcher.normalize_results({'qualified': [{'name': 'Alpha'}]}, strong_profile)

        columns = set(LenderMatch.__table__.columns.keys())
        assert set(processed['qualified'][0]) <= columns

    def test_empty_response(self, strong_profile):
        processed = lender_matcher.normalize_results({}, strong_profile)

        assert processed['qualified'] == []
        assert processed['summary']['total_processed'] == 0

    def test_prepare_qualification_prefers_fcs_revenue(self):
        profile = lender_matcher.prepare_qualification_data(
            {'businessName': 'Acme', 'monthlyRevenue': 30000, 'state': 'ny'},
            {'monthly_revenue': 42000, 'negative_days': 3},
        )

        assert profile['monthlyRevenue'] == 42000.0
        assert profile['negativeDays'] == 3
        assert profile['state'] == 'NY'
        assert profile['fico'] == 650
        assert profile['position'] == 1

    def test_string_overrides_coerced(self):
        profile = lender_matcher.prepare_qualification_data({
            'fico': '720',
            'monthlyRevenue': '$50,000',
            'tib': '36',
            'negativeDays': '18',
            'depositsPerMonth': '12',
            'position': '2',
        })

        assert profile['fico'] == 720
        assert profile['monthlyRevenue'] == 50000.0
        assert profile['tib'] == 36
        assert profile['negativeDays'] == 18
        assert profile['depositsPerMonth'] == 12
        assert profile['position'] == 2

    def test_string_fico_scores_like_numeric(self):
        from_strings = lender_matcher.prepare_qualification_data({'fico': '720', 'monthlyRevenue': '50000'})
        from_numbers = lender_matcher.prepare_qualification_data({'fico': 720, 'monthlyRevenue': 50000})
        lender = {'description': 'min fico 650'}

        assert lender_matcher.calculate_match_score(lender, from_strings) == \
            lender_matcher.calculate_match_score(lender, from_numbers) == 60

    def test_unparseable_override_falls_back_to_default(self):
        profile = lender_matcher.prepare_qualification_data({'fico': 'excellent', 'monthlyRevenue': 'N/A'})

        assert profile['fico'] == 650
        assert profile['monthlyRevenue'] == 0.0


class TestRankingAndFormatting:

    def test_rank_by_tier_then_score(self):
        matches = [
            {'lender_name': 'NoTier', 'tier': None, 'match_score': 99},
            {'lender_name': 'B', 'tier': 2, 'match_score': 60},
            {'lender_name': 'A', 'tier': 1, 'match_score': 70},
            {'lender_name': 'C', 'tier': 2, 'match_score': 80},
        ]

        ranked = lender_matcher.rank(matches)

        assert [m['lender_name'] for m in ranked] == ['A', 'C', 'B', 'NoTier']

    def test_sms_format(self):
        lenders = [
            {'lender_name': 'Alpha', 'tier': 1, 'is_preferred': True},
            {'lender_name': 'Beta', 'tier': 2},
            {'lender_name': 'Gamma', 'tier': None},
            {'lender_name': 'Delta', 'tier': 3},
        ]

        text = lender_matcher.format_for_sms(lenders)

        assert text.splitlines() == [
            "4 lenders qualified:",
            "1. Alpha (T1)*",
            "2. Beta (T2)",
            "3. Gamma (T?)",
            "+1 more available",
        ]

    def test_no_lenders(self):
        assert lender_matcher.format_for_sms([]) == "No qualified lenders found."
        assert lender_matcher.format_for_display([]) == "No qualified lenders found."

    def test_display_groups_by_tier(self):
        lenders = [
            {'lender_name': 'Alpha', 'tier': 1, 'is_preferred': True},
            {'lender_name': 'Beta', 'tier': 2},
        ]

        text = lender_matcher.format_for_display(lenders)

        assert text.startswith("Found 2 qualified lenders:")
        assert "Tier 1:\n- Alpha (preferred)" in text
        assert "Tier 2:\n- Beta" in text


# ============================================================================
# SERVICE
# ============================================================================

class TestSaveLenderMatches:

    @pytest.mark.asyncio
    async def test_delete_runs_before_inserts(self, qualification_service, mock_db):
        calls = []
        mock_db.execute.side_effect = lambda *args, **kwargs: calls.append('delete')
        mock_db.add.side_effect = lambda obj: calls.append(('add', obj.lender_name))

        await qualification_service.save_lender_matches(uuid4(), [
            {'lender_name': 'Alpha', 'qualified': True},
            {'lender_name': 'Beta', 'qualified': False, 'blocking_reason': 'Min FICO'},
        ])

        assert calls == ['delete', ('add', 'Alpha'), ('add', 'Beta')]
        mock_db.flush.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_result_still_clears_previous_set(self, qualification_service, mock_db):
        await qualification_service.save_lender_matches(uuid4(), [])

        mock_db.execute.assert_awaited_once()
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_qualify_lenders_persists_and_commits(self, qualification_service, mock_db):
        qualification_service.call_qualification_service = AsyncMock(return_value={
            'qualified': [{'Lender Name': 'Alpha', 'Tier': 1}],
            'nonQualified': [{'lender': 'Beta', 'reason': 'State excluded'}],
        })
        qualification_service.save_lender_matches = AsyncMock()

        result = await qualification_service.qualify_lenders('1001', {'businessName': 'Acme', 'fico': 700})

        conversation_id, rows = qualification_service.save_lender_matches.await_args.args
        assert [row['lender_name'] for row in rows] == ['Alpha', 'Beta']
        assert result['summary']['total_processed'] == 2
        assert result['qualification_data']['fico'] == 700
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_service_error_leaves_matches_untouched(self, qualification_service, mock_db):
        qualification_service.call_qualification_service = AsyncMock(
            side_effect=ExternalServiceError("lender_qualification", "HTTP 503")
        )

        with pytest.raises(ExternalServiceError):
            await qualification_service.qualify_lenders('1001', {'businessName': 'Acme'})

        mock_db.execute.assert_not_awaited()
        mock_db.commit.assert_not_awaited()


class TestQualificationServiceCall:

    @pytest.mark.asyncio
    async def test_missing_url(self, mock_db):
        service = LenderQualificationService(mock_db)
        service.webhook_url = None

        with pytest.raises(ExternalServiceError, match="not configured"):
            await service.call_qualification_service({})

    @pytest.mark.asyncio
    async def test_http_error_status(self, qualification_service):
        client = mock_http_client(response=Mock(status_code=503))

        with patch('mcacrm.services.lender_matcher.httpx.AsyncClient') as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            client_cls.return_value.__aexit__.return_value = False
            with pytest.raises(ExternalServiceError, match="HTTP 503"):
                await qualification_service.call_qualification_service({'fico': 700})

    @pytest.mark.asyncio
    async def test_transport_error(self, qualification_service):
        client = mock_http_client(error=httpx.ConnectError("refused"))

        with patch('mcacrm.services.lender_matcher.httpx.AsyncClient') as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            client_cls.return_value.__aexit__.return_value = False
            with pytest.raises(ExternalServiceError, match="Request failed"):
                await qualification_service.call_qualification_service({})

    @pytest.mark.asyncio
    async def test_non_object_body_is_empty_result(self, qualification_service):
        response = Mock(status_code=200)
        response.json.return_value = ['not', 'an', 'object']
        client = mock_http_client(response=response)

        with patch('mcacrm.services.lender_matcher.httpx.AsyncClient') as client_cls:
            client_cls.return_value.__aenter__.return_value = client
            client_cls.return_value.__aexit__.return_value = False
            result = await qualification_service.call_qualification_service({})

        assert result == {'qualified': [], 'nonQualified': []}
        client.post.assert_awaited_once_with("https://qualify.test/hook", json={})


class TestTriggerQualification:

    @pytest.mark.asyncio
    async def test_requires_fcs_results(self, qualification_service):
        with pytest.raises(PreconditionFailed) as exc_info:
            await qualification_service.trigger_qualification('1001')

        assert exc_info.value.missing_fields == ["fcs_results"]
