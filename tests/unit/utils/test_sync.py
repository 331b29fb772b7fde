from stackdeploy.utils.sync import poll_condition


def test_poll_condition():
    results = iter([False, False, True])
    assert poll_condition(lambda: next(results), interval=0.01)


def test_poll_condition_timeout():
    assert not poll_condition(lambda: False, timeout=0.03, interval=0.01)
