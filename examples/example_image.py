import os

import numpy as np
from astropy.io import fits

import fitsmanip


def create_test_file(filename):
    """Gaussian source on a noisy background with a few hot pixels."""
    rng = np.random.default_rng(42)
    y, x = np.mgrid[0:128, 0:128]
    data = 100 + 5 * rng.standard_normal((128, 128))
    data += 1000 * np.exp(-((x - 64) ** 2 + (y - 64) ** 2) / (2 * 8.0 ** 2))
    data[rng.integers(0, 128, 20), rng.integers(0, 128, 20)] = 5000
    fits.PrimaryHDU(data.astype(np.float32)).writeto(filename, overwrite=True)


def main():
    test_file = "image_example.fits"
    create_test_file(test_file)

    f = fitsmanip.read(test_file)
    hdu = f.first_image()
    dimg = fitsmanip.image2double(hdu.image)
    print(f"Input: {fitsmanip.get_imgstat(dimg)}")

    # Remove the hot pixels with a 3x3 median
    filtered = fitsmanip.get_median(dimg, 1)
    print(f"Median filtered: {fitsmanip.get_imgstat(filtered)}")

    # Render through the jet palette with a sqrt stretch
    fitsmanip.normalize_dbl(filtered)
    fitsmanip.dbl_histcutoff(filtered, 1000, 0.01, 0.001)
    fitsmanip.mktransform(filtered, fitsmanip.get_imgstat(filtered), "sqrt")
    rgb = fitsmanip.convert2palette(filtered, fitsmanip.Palette.JET)
    with open("image_example.ppm", "wb") as out:
        out.write(fitsmanip.to_ppm(rgb, filtered.width, filtered.height))
    print("Wrote image_example.ppm")

    # Store the filtered pixels in a new file
    hdu.image.rebuild(fitsmanip.get_median(dimg, 1))
    output = fitsmanip.make_filename("image_example_median", "fits")
    f.write(output)
    print(f"Wrote {output} with BITPIX {hdu.image.bitpix}")

    os.remove(test_file)


if __name__ == "__main__":
    main()
