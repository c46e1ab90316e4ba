import pytest

from ledger.errors import ValidationError
from rules.reward_rules import RewardRule, RewardRuleBook, default_reward_rules


class TestRuleBook:
    def test_default_levels(self):
        book = RewardRuleBook(default_reward_rules(100))

        assert book.match(1).points() == 100
        assert book.match(2).points() == 20
        assert book.match(3).points() == 10
        assert book.match(4) is None
        assert book.deepest_level() == 3

    def test_priority_and_active_flag(self):
        book = RewardRuleBook([
            RewardRule(id="base", name="Base", base_points=10, priority=1),
            RewardRule(id="promo", name="Promo", base_points=10, multiplier=3, priority=9, is_active=False),
        ])
        assert book.match(1).id == "base"

        book.get_rule("promo").is_active = True

        assert book.match(1).points() == 30

    def test_dict_round_trip_keeps_caps(self):
        rule = RewardRule(id="cap", name="Capped", base_points=50, max_rewards=2, max_level=2)

        restored = RewardRule.from_dict(rule.to_dict())

        assert restored == rule
        assert restored.reached_cap(2)
        assert not restored.reached_cap(1)


class TestCalculateReward:
    def test_level_one_default(self, system, make_user):
        assert system.rewards.calculate_reward(make_user()) == 100

    def test_deeper_levels(self, system, make_user):
        user_id = make_user()

        assert system.rewards.calculate_reward(user_id, level=2) == 20
        assert system.rewards.calculate_reward(user_id, level=4) == 0

    def test_level_must_be_positive(self, system, make_user):
        with pytest.raises(ValidationError):
            system.rewards.calculate_reward(make_user(), level=0)

    def test_cap_stops_rewards(self, system, make_user, link):
        system.rule_book.add_rule(RewardRule(
            id="direct-invite", name="Capped direct reward",
            base_points=100, max_rewards=1, priority=10,
        ))
        inviter = make_user()

        first = link(inviter, make_user())
        second = link(inviter, make_user())

        assert first.points_awarded == 100
        assert second.points_awarded == 0
        assert second.reward_record is None
        assert system.ledger.get_balance(inviter) == 100

    def test_plan_multi_level(self, system, make_user, link):
        a, b, c = make_user(), make_user(), make_user()
        link(a, b)
        link(b, c)

        plan = system.rewards.plan_multi_level(c)

        assert [(p.level, p.user_id, p.points) for p in plan] == [(1, c, 100), (2, b, 20), (3, a, 10)]


class TestRewardReports:
    def test_history_and_stats(self, system, make_user, link, clock):
        inviter = make_user()
        first, second = make_user(), make_user()
        link(inviter, first)
        clock.advance(hours=1)
        link(inviter, second, reward_points=50)

        history = system.rewards.reward_history(inviter)
        stats = system.rewards.reward_stats(inviter)

        assert history.total == 2
        assert [(r.invitee_id, r.points) for r in history.items] == [(second, 50), (first, 100)]
        assert stats.total_rewards == 2
        assert stats.total_points == 150
        assert stats.average_points == 75.0
        assert stats.successful_invites == 2

    def test_no_rewards(self, system, make_user):
        stats = system.rewards.reward_stats(make_user())

        assert stats.total_rewards == 0
        assert stats.average_points == 0.0
        assert stats.last_reward_at is None
