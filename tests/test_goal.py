import pytest

from berghain.goal import (
    ATTR_BIT,
    TAIL,
    Goal,
    GoalOp,
    attr,
    check_goals,
    evaluate,
    make_params,
    value,
)


def test_worked_example_from_source():
    goal = Goal(
        make_params(
            GoalOp.PLUS,
            value(4),
            GoalOp.MULT,
            value(2),
            GoalOp.PLUS,
            value(-10),
            value(13),
        )
    )
    assert evaluate(goal) == 10


def test_make_params_appends_tail():
    params = make_params(GoalOp.GE, attr(0), value(600))
    assert params[-1] == TAIL
    assert params[:-1] == (GoalOp.GE, attr(0), value(600))


def test_terms_exclude_tail():
    goal = Goal(make_params(GoalOp.GE, attr(1), value(600)))
    assert goal.terms() == [GoalOp.GE, attr(1), value(600)]


def test_attr_sets_attr_bit():
    assert attr(3) & ATTR_BIT
    assert attr(3) & ~ATTR_BIT == 3


def test_negative_literal_round_trip():
    goal = Goal(make_params(GoalOp.PLUS, value(-10), value(0)))
    assert evaluate(goal) == -10


@pytest.mark.parametrize("count,expected", [(600, 1), (601, 1), (599, 0)])
def test_ge_with_attribute_count(count, expected):
    goal = Goal(make_params(GoalOp.GE, attr(0), value(600)))
    assert evaluate(goal, [count]) == expected


def test_division_truncates_toward_zero():
    goal = Goal(make_params(GoalOp.DIV, value(-7), value(2)))
    assert evaluate(goal) == -3


def test_lt_and_minus():
    lt = Goal(make_params(GoalOp.LT, value(1), value(2)))
    minus = Goal(make_params(GoalOp.MINUS, value(5), value(8)))
    assert evaluate(lt) == 1
    assert evaluate(minus) == -3


def test_ratio_goal_uses_attribute_counts():
    goal = Goal(make_params(GoalOp.GE, attr(1), GoalOp.DIV, attr(0), value(2)))
    assert evaluate(goal, [100, 50]) == 1
    assert evaluate(goal, [100, 49]) == 0


def test_check_goals_requires_all():
    goals = [
        Goal(make_params(GoalOp.GE, attr(0), value(600))),
        Goal(make_params(GoalOp.GE, attr(1), value(600))),
    ]
    assert check_goals(goals, [600, 600]) is True
    assert check_goals(goals, [600, 10]) is False
    assert check_goals([], [0]) is True


def test_goal_without_tail_rejected():
    with pytest.raises(ValueError):
        Goal((GoalOp.PLUS, value(1), value(2)))


def test_malformed_expression_raises():
    goal = Goal(make_params(GoalOp.PLUS, GoalOp.PLUS, value(1)))
    with pytest.raises(ValueError):
        evaluate(goal)