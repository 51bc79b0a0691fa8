import os
import signal
import stat

import numpy as np
import pytest
from astropy.io import fits

import fitsmanip
from fitsmanip.errors import FitsIOError, MalformedHeaderError, UnsupportedOperationError
from fitsmanip.fits_writer import encode_header, image_cards
from fitsmanip.hdu import HDU, FitsFile, HDUType
from fitsmanip.image import FitsImage
from fitsmanip.keywords import KeywordList
from fitsmanip.table import FitsTable


def make_file(path, arrays, **keys):
    f = FitsFile(path)
    for array in arrays:
        keywords = KeywordList()
        for key, value in keys.items():
            keywords.add_value(key, value)
        f.append_hdu(HDU(HDUType.IMAGE, keywords, FitsImage.from_array(array)))
    return f


def test_writing(tmp_path):
    filename = tmp_path / "test_write.fits"
    data = np.arange(100, dtype=np.float32).reshape(10, 10)
    ext = np.arange(6, dtype=np.uint16).reshape(2, 3) * 10000
    f = make_file(filename, [data, ext], TESTKEY='TESTVAL')
    f.write()

    raw = filename.read_bytes()
    assert len(raw) % 2880 == 0

    # Verify with Astropy
    with fits.open(filename) as hdul:
        assert len(hdul) == 2
        np.testing.assert_array_equal(hdul[0].data, data)
        assert hdul[0].header['TESTKEY'] == 'TESTVAL'
        assert hdul[1].header['XTENSION'] == 'IMAGE'
        assert hdul[1].header['BZERO'] == 32768
        np.testing.assert_array_equal(hdul[1].data, ext)


def test_refuses_existing_file(tmp_path):
    filename = tmp_path / "exists.fits"
    filename.write_bytes(b"keep me")
    f = make_file(filename, [np.zeros(3, dtype=np.uint8)])
    with pytest.raises(FitsIOError):
        f.write()
    assert filename.read_bytes() == b"keep me"
    f.write(overwrite=True)
    assert fitsmanip.read(filename)[1].image.totpix == 3


def test_empty_file_refused(tmp_path):
    with pytest.raises(FitsIOError):
        FitsFile(tmp_path / "empty.fits").write()


def test_structural_records_regenerated(tmp_path):
    keywords = KeywordList.from_cards([
        "SIMPLE  =                    T",
        "BITPIX  =                  -32",
        "NAXIS   =                    1",
        "NAXIS1  =                  999",
        "BZERO   =                 12.0",
        "OBJECT  = 'M31     '",
        "CRPIX1  =                  1.0",
        "HISTORY kept",
    ])
    hdu = HDU(HDUType.IMAGE, keywords, FitsImage.from_array(np.arange(4, dtype=np.uint8)))
    header = encode_header(hdu, 1).decode('ascii')
    cards = [header[i:i + 80] for i in range(0, len(header), 80)]
    keys = [c[:8].strip() for c in cards if c.strip()]
    assert keys == ['SIMPLE', 'BITPIX', 'NAXIS', 'NAXIS1', 'EXTEND', 'OBJECT', 'CRPIX1',
                    'HISTORY', 'END']
    assert "999" not in header
    assert "12.0" not in header


def test_image_cards_extension():
    img = FitsImage.from_array(np.zeros((2, 2), dtype=np.uint32))
    img.blank = 0
    cards = image_cards(img, 2)
    keys = [c[:8].strip() for c in cards]
    assert keys == ['XTENSION', 'BITPIX', 'NAXIS', 'NAXIS1', 'NAXIS2', 'PCOUNT', 'GCOUNT',
                    'BZERO', 'BSCALE', 'BLANK']
    assert cards[-1].split('=')[1].split('/')[0].strip() == str(-(1 << 31))


def test_unwritable_card_reports_hdu():
    keywords = KeywordList()
    record = keywords.add("OBSERVER= 'Hubble'")
    record._text = "OBSERVER= 'Jürgen'".ljust(80)
    hdu = HDU(HDUType.IMAGE, keywords, FitsImage.from_array(np.arange(4, dtype=np.uint8)))
    with pytest.raises(MalformedHeaderError) as info:
        encode_header(hdu, 3)
    assert info.value.hdu_index == 3


def test_tables_not_writable(tmp_path):
    f = FitsFile(tmp_path / "table.fits")
    f.append_hdu(HDU(HDUType.IMAGE))
    f.append_hdu(HDU(HDUType.BINARY_TABLE, payload=FitsTable([], 0)))
    with pytest.raises(UnsupportedOperationError) as info:
        f.write()
    assert info.value.hdu_index == 2


@pytest.mark.parametrize("dtype", [np.uint8, np.uint16, np.uint32, np.float32, np.float64])
def test_rewrite_round_trip(tmp_path, dtype):
    """Read, rewrite and read again keeps pixels and user records."""
    filename = tmp_path / "round.fits"
    data = (np.arange(30).reshape(5, 6) * 3).astype(dtype)
    hdu = fits.PrimaryHDU(data)
    hdu.header['OBSERVER'] = ('Hubble', 'who')
    hdu.header['HISTORY'] = 'created'
    hdu.writeto(filename)

    first = fitsmanip.read(filename)
    first.rewrite()
    second = fitsmanip.read(filename)

    np.testing.assert_array_equal(second[1].image.array(), first[1].image.array())
    np.testing.assert_array_equal(second[1].image.array(), data)
    assert second[1].image.bitpix == first[1].image.bitpix
    user = [r for r in first[1].keywords.emittable()]
    assert [r for r in second[1].keywords.emittable()] == user

    with fits.open(filename) as hdul:
        np.testing.assert_array_equal(hdul[0].data, data)
        assert hdul[0].header['OBSERVER'] == 'Hubble'


def test_rewrite_keeps_permissions(tmp_path):
    filename = tmp_path / "mode.fits"
    fits.PrimaryHDU(np.ones((2, 2), dtype=np.float32)).writeto(filename)
    os.chmod(filename, 0o640)
    f = fitsmanip.read(filename)
    f[1].keywords.add_value('EDITED', True)
    f.rewrite(block_signals=False)
    assert stat.S_IMODE(os.stat(filename).st_mode) == 0o640
    assert fitsmanip.read(filename)[1].keywords.get_value('EDITED') is True


def test_rewrite_through_symlink(tmp_path):
    target = tmp_path / "real.fits"
    link = tmp_path / "link.fits"
    fits.PrimaryHDU(np.ones(3, dtype=np.float32)).writeto(target)
    link.symlink_to(target)
    f = fitsmanip.read(link)
    f[1].keywords.add_value('VIA', 'link')
    f.rewrite()
    assert link.is_symlink()
    assert fitsmanip.read(target)[1].keywords.get_value('VIA') == 'link'


def test_failed_rewrite_leaves_original(tmp_path):
    filename = tmp_path / "atomic.fits"
    fits.PrimaryHDU(np.arange(4, dtype=np.float32)).writeto(filename)
    before = filename.read_bytes()

    f = fitsmanip.read(filename)
    f.append_hdu(HDU(HDUType.ASCII_TABLE, payload=FitsTable([], 0, ascii=True)))
    with pytest.raises(UnsupportedOperationError):
        f.rewrite()

    assert filename.read_bytes() == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["atomic.fits"]


def test_blocked_signals_restores_mask():
    if not hasattr(signal, "pthread_sigmask"):
        pytest.skip("no pthread_sigmask")
    before = signal.pthread_sigmask(signal.SIG_BLOCK, [])
    with fitsmanip.blocked_signals():
        inside = signal.pthread_sigmask(signal.SIG_BLOCK, [])
        assert signal.SIGINT in inside
    assert signal.pthread_sigmask(signal.SIG_BLOCK, []) == before
