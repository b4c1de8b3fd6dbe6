import pytest

from skillflow.observability import clear_trace_context


@pytest.fixture(autouse=True)
def _clean_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()
