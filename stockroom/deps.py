from stockroom.clock import Clock, SystemClock

_system_clock = SystemClock()


def get_clock() -> Clock:
    # 测试里用 dependency_overrides 换成 FixedClock
    return _system_clock
