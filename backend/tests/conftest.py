import io
import os
import tempfile
from collections import Counter

import pytest
from PIL import Image

# Point the activity ledger at a throwaway database before imgconv.config is imported
_DB_DIR = tempfile.mkdtemp(prefix="imgconv-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"

from imgconv.conversion.engine import PillowEngine  # noqa: E402
from imgconv.conversion.models import FitPolicy  # noqa: E402
from imgconv.conversion.service import ConversionService  # noqa: E402


class CountingEngine(PillowEngine):
    """PillowEngine that records every call so tests can assert on codec usage."""

    def __init__(self):
        self.calls = Counter()
        self.decoded = []
        self.fits = []
        self.encoded = []

    def decode(self, data):
        self.calls["decode"] += 1
        self.decoded.append(data)
        return super().decode(data)

    def read_metadata(self, data):
        self.calls["read_metadata"] += 1
        return super().read_metadata(data)

    def resize(self, handle, width=None, height=None, fit=FitPolicy.FILL):
        self.calls["resize"] += 1
        self.fits.append(fit)
        return super().resize(handle, width, height, fit)

    def flatten(self, handle, background):
        self.calls["flatten"] += 1
        return super().flatten(handle, background)

    def encode(self, handle, fmt, quality):
        self.calls["encode"] += 1
        self.encoded.append((quality, handle.image.size))
        return super().encode(handle, fmt, quality)


@pytest.fixture
def engine():
    return CountingEngine()


@pytest.fixture
def service(engine):
    return ConversionService(engine=engine)


@pytest.fixture
def make_image():
    """Build encoded image bytes: make_image(size, mode, color, fmt, **save_kwargs)."""

    def _make(size=(100, 100), mode="RGB", color=(200, 30, 30), fmt="PNG", **save_kwargs):
        img = Image.new(mode, size, color)
        buf = io.BytesIO()
        img.save(buf, format=fmt, **save_kwargs)
        return buf.getvalue()

    return _make


@pytest.fixture
def make_noise():
    """Random RGB noise; compresses badly, which makes byte budgets hard to hit."""

    def _make(size=(400, 400), fmt="JPEG", quality=100):
        w, h = size
        img = Image.frombytes("RGB", size, os.urandom(w * h * 3))
        buf = io.BytesIO()
        img.save(buf, format=fmt, quality=quality)
        return buf.getvalue()

    return _make
