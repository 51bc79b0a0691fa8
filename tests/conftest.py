"""
Shared fixtures: raw FITS byte streams built card by card.
"""

import numpy as np
import pytest

from fitsmanip.runtime import Runtime, RuntimeConfig

BLOCK = 2880


def card(key, value=None, comment=None):
    """Fixed-format card, written independently of the library formatter."""
    if value is None:
        return key.ljust(80)
    if isinstance(value, bool):
        field = ('T' if value else 'F').rjust(20)
    elif isinstance(value, str):
        field = ("'" + value.ljust(8) + "'").ljust(20)
    else:
        field = str(value).rjust(20)
    text = key.ljust(8) + '= ' + field
    if comment:
        text += ' / ' + comment
    return text.ljust(80)[:80]


def pad(data, fill=b'\0'):
    remainder = len(data) % BLOCK
    return data + fill * (BLOCK - remainder) if remainder else data


def header_bytes(cards):
    return pad((''.join(c.ljust(80) for c in cards) + 'END'.ljust(80)).encode('ascii'), b' ')


def hdu_bytes(cards, data=b''):
    return header_bytes(cards) + pad(data)


def image_cards(bitpix, shape, primary=True, extra=()):
    """Mandatory cards for an array shaped (NAXIS2, NAXIS1)."""
    cards = [card('SIMPLE', True) if primary else card('XTENSION', 'IMAGE'),
             card('BITPIX', bitpix), card('NAXIS', len(shape))]
    for n, size in enumerate(reversed(shape), 1):
        cards.append(card(f'NAXIS{n}', size))
    if not primary:
        cards += [card('PCOUNT', 0), card('GCOUNT', 1)]
    return cards + list(extra)


@pytest.fixture
def write_bytes(tmp_path):
    def _write(data, name="test.fits"):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _write


@pytest.fixture
def s1_file(write_bytes):
    """Primary 4x3 BITPIX=16 image holding 0..11."""
    values = np.arange(12, dtype='>i2').reshape(3, 4)
    return write_bytes(hdu_bytes(image_cards(16, values.shape), values.tobytes()), "s1.fits")


@pytest.fixture
def runtime():
    rt = Runtime(RuntimeConfig(num_threads=4, min_chunk=4))
    yield rt
    rt.shutdown()
