"""
Command-line interface for fitsmanip.

Subcommands:
  - imstat: statistics of the first image HDU of each file
  - keylist: list or edit the keywords of an HDU
  - listtable: print the tables of a file
  - median: median filter the first image
  - render: render an image through a palette into a PPM file
"""

import argparse
import sys
from typing import List, Optional

from . import fits_reader
from .errors import DimensionMismatchError, FITSError, FitsIOError
from .fileops import file_is_absent
from .hdu import HDU, FitsFile, HDUType
from .histogram import dbl2histogram, dbl_histcutoff, dbl_histeq
from .image import image2double
from .logging import logger, set_log_level
from .median import get_median
from .palette import Palette, convert2palette, to_ppm
from .transforms import IntensityTransform, get_imgstat, mktransform, normalize_dbl


def _image_hdu(fits: FitsFile, number: Optional[int] = None) -> HDU:
    if number is None:
        hdu = fits.first_image()
        if hdu is None:
            raise DimensionMismatchError(f"no image HDU with data in {fits.path}")
        return hdu
    hdu = fits.select(number)
    if hdu.hdutype != HDUType.IMAGE or hdu.image is None or hdu.image.is_header_only:
        raise DimensionMismatchError(f"HDU {number} of {fits.path} is not an image", number)
    return hdu


def cmd_imstat(args) -> None:
    output = FitsFile(args.outfile) if args.outfile else None
    for name in args.files:
        fits = fits_reader.read(name)
        hdu = fits.first_image()
        if hdu is None:
            logger.warning(f"Didn't find an image HDU in {name}")
            continue
        st = get_imgstat(image2double(hdu.image))
        print(f"{name}:")
        print(f"MEAN={st.mean:g}\nSTD={st.std:g}\nMIN={st.min:g}\nMAX={st.max:g}")
        if output is not None:
            output.append_hdu(HDU(HDUType.IMAGE, hdu.keywords.copy(), hdu.image.copy()))
    if output is not None and output.nhdus:
        output.write(overwrite=args.rewrite)


def cmd_keylist(args) -> None:
    fits = fits_reader.read(args.file)
    hdu = fits.select(args.hdu)
    keywords = hdu.keywords
    modified = False
    for substring in args.strip or ():
        modified |= keywords.remove_by_substring(substring) > 0
    for key in args.remove or ():
        if not keywords.remove(key):
            logger.warning(f"No keyword {key} in HDU {args.hdu}")
        modified = True
    for assignment in args.modify or ():
        key, sep, value = assignment.partition('=')
        if not sep:
            raise ValueError(f"expected KEY=VALUE, got {assignment!r}")
        keywords.modify(key, value.strip())
        modified = True
    for record in args.addrec or ():
        keywords.add(record, validate=True)
        modified = True

    if modified:
        logger.info(f"Rewrite file {fits.path}")
        fits.rewrite()
    if args.list or not modified:
        print(keywords.format())


def cmd_listtable(args) -> None:
    fits = fits_reader.read(args.file)
    found = False
    for number, hdu in enumerate(fits, start=1):
        if not hdu.hdutype.is_table or hdu.payload is None:
            continue
        found = True
        print(f"HDU {number}:")
        print(hdu.table.format(max_rows=args.rows))
    if not found:
        logger.warning(f"No tables in {args.file}")


def cmd_median(args) -> None:
    if args.outfile and not args.rewrite and not file_is_absent(args.outfile):
        raise FitsIOError(f"file {args.outfile} exists")
    fits = fits_reader.read(args.inname)
    hdu = _image_hdu(fits, args.hdu)
    filtered = get_median(image2double(hdu.image), args.radius)
    hdu.image.rebuild(filtered)
    if args.outfile:
        fits.write(args.outfile, overwrite=args.rewrite)
    else:
        fits.rewrite()


def cmd_render(args) -> None:
    cmap = Palette.from_name(args.palette)
    transform = IntensityTransform.from_name(args.transform)
    if not args.rewrite and not file_is_absent(args.outfile):
        raise FitsIOError(f"file {args.outfile} exists")

    fits = fits_reader.read(args.inname)
    hdu = _image_hdu(fits, args.hdu)
    dimg = image2double(hdu.image)
    normalize_dbl(dimg)
    logger.debug(f"Histogram before transformations: {dbl2histogram(dimg, args.levels).counts.tolist()}")
    if args.histeq:
        dbl_histeq(dimg, args.levels)
    if args.cutlow > 0 or args.cuthigh > 0:
        dbl_histcutoff(dimg, args.levels, args.cutlow, args.cuthigh)
    mktransform(dimg, get_imgstat(dimg), transform)
    rgb = convert2palette(dimg, cmap)
    with open(args.outfile, 'wb') as f:
        f.write(to_ppm(rgb, dimg.width, dimg.height))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fitsmanip", description="FITS file manipulation tools")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="more diagnostics (repeat for debug output)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("imstat", help="statistics of the first image HDU of each file")
    p.add_argument("files", nargs="+", help="input FITS files")
    p.add_argument("-o", "--outfile", help="collect the images into this file")
    p.add_argument("-r", "--rewrite", action="store_true", help="overwrite the output file")
    p.set_defaults(func=cmd_imstat)

    p = sub.add_parser("keylist", help="list or edit keywords")
    p.add_argument("file", help="input FITS file")
    p.add_argument("-n", "--hdu", type=int, default=1, help="HDU number (default 1)")
    p.add_argument("-l", "--list", action="store_true", help="list keywords after editing")
    p.add_argument("-a", "--addrec", action="append", help="add a record (KEY = value / comment)")
    p.add_argument("-m", "--modify", action="append", help="change a value (KEY=VALUE)")
    p.add_argument("-r", "--remove", action="append", help="remove every record with this key")
    p.add_argument("-s", "--strip", action="append",
                   help="remove every record containing this substring")
    p.set_defaults(func=cmd_keylist)

    p = sub.add_parser("listtable", help="print the tables of a file")
    p.add_argument("file", help="input FITS file")
    p.add_argument("--rows", type=int, default=None, help="print at most this many rows")
    p.set_defaults(func=cmd_listtable)

    p = sub.add_parser("median", help="median filter the first image")
    p.add_argument("-i", "--inname", required=True, help="input file")
    p.add_argument("-o", "--outfile", help="output file (default: rewrite the input)")
    p.add_argument("-r", "--rewrite", action="store_true", help="overwrite the output file")
    p.add_argument("-n", "--hdu", type=int, default=None, help="HDU number of the image")
    p.add_argument("-R", "--radius", type=int, default=1, help="median radius (0 for cross 3x3)")
    p.set_defaults(func=cmd_median)

    p = sub.add_parser("render", help="render an image into a PPM file")
    p.add_argument("-i", "--inname", required=True, help="input file")
    p.add_argument("-o", "--outfile", required=True, help="output PPM file")
    p.add_argument("-r", "--rewrite", action="store_true", help="overwrite the output file")
    p.add_argument("-n", "--hdu", type=int, default=None, help="HDU number of the image")
    p.add_argument("-p", "--palette", default="gray", help="br, cold, gray, hot or jet")
    p.add_argument("-T", "--transform", default="linear", help="exp, linear, log, pow or sqrt")
    p.add_argument("-E", "--histeq", action="store_true", help="histogram equalisation")
    p.add_argument("-l", "--levels", type=int, default=100, help="histogram levels")
    p.add_argument("-L", "--cutlow", type=float, default=0.0, help="histogram cut-off low fraction")
    p.add_argument("-H", "--cuthigh", type=float, default=0.0,
                   help="histogram cut-off high fraction")
    p.set_defaults(func=cmd_render)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    if args.verbose:
        set_log_level("DEBUG" if args.verbose > 1 else "INFO")

    try:
        args.func(args)
    except (FITSError, OSError, ValueError) as e:
        logger.error(f"{args.cmd}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
