"""Request-time source of "now".

Routes read the time here and pass it into the models; nothing below the
route layer looks at the wall clock. Tests pin time by setting ``CLOCK`` in
the app config to a zero-argument callable.
"""
from datetime import datetime

from flask import current_app


def now():
    clock = current_app.config.get('CLOCK')
    if clock is not None:
        return clock()
    return datetime.now()


def today():
    return now().date()
