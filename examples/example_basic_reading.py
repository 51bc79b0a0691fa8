import os

import numpy as np
from astropy.io import fits

import fitsmanip


def create_test_file(filename):
    if not os.path.exists(filename):
        data = np.arange(100, dtype=np.float32).reshape(10, 10)
        hdu = fits.PrimaryHDU(data)
        hdu.header["CTYPE1"] = "RA---TAN"
        hdu.header["CTYPE2"] = "DEC--TAN"
        hdu.header["CRVAL1"] = 202.5
        hdu.header["CRVAL2"] = 47.5
        hdu.header["OBJECT"] = "Test Object"  # Add a non-WCS keyword
        hdu.writeto(filename, overwrite=True)


def main():
    test_file = "basic_example.fits"
    create_test_file(test_file)

    # Read every HDU of the file
    try:
        f = fitsmanip.read(test_file)
        hdu = f[1]  # Primary HDU is 1
        print("Full Image (Primary HDU):")
        print(f"  Axes: {hdu.image.naxes}, BITPIX: {hdu.image.bitpix}")
        print(f"  CRVAL1: {hdu.keywords.get_value('CRVAL1')}")
        print(f"  OBJECT: {hdu.keywords.get_value('OBJECT')}")
    except fitsmanip.FITSError as e:
        print(f"  Error: {e}")
        return

    # Keyword listing
    print("\nKeywords:")
    print(hdu.keywords.format())

    # --- Statistics of the working buffer ---
    dimg = fitsmanip.image2double(hdu.image)
    st = fitsmanip.get_imgstat(dimg)
    print(f"\nStatistics: {st}")

    # --- Edit a keyword and rewrite the file in place ---
    hdu.keywords.modify("OBJECT", "'M51     ' / Whirlpool")
    hdu.keywords.add("HISTORY edited by example_basic_reading.py")
    f.rewrite()
    print(f"\nOBJECT after rewrite: {fitsmanip.read(test_file)[1].keywords.get_value('OBJECT')}")

    # Clean up
    os.remove(test_file)


if __name__ == "__main__":
    main()
