# -*- coding: utf-8 -*-
import pytest

from recordings import make_recording


@pytest.fixture
def recording():
    return make_recording()
