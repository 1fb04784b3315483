#!/usr/bin/env python3
"""
rpiraw2dng.py
This app extracts the raw sensor data that a Raspberry Pi camera appends to its JPEGs when capturing
with 'raspistill --raw' and stores it in an Adobe DNG (TIFF-EP) file, which can then be developed in
any raw processor such as darktable or RawTherapee.

No processing is done on the image data - the 10-bit samples are stored left-justified in 16 bits
along with the CFA layout, color matrix, white balance and black/white levels needed to develop them.

Data structure of the Raspberry Pi's "raw" JPEG:
https://picamera.readthedocs.io/en/release-1.13/recipes2.html#raw-bayer-data-captures
"""

#
# verify python version early, before executing any logic that relies on features not available in all versions
#
import sys
if (sys.version_info.major < 3) or (sys.version_info.minor < 10):
    print("Requires Python v3.10 or later but you're running v{}.{}.{}".format(sys.version_info.major, sys.version_info.minor, sys.version_info.micro))
    sys.exit(1)

#
# standard Python module imports
#
import argparse
from   enum import Enum
import importlib
import os
from   pathlib import Path
import time
import types
from   typing import List, NamedTuple, Optional, Sequence


#
# types
#
class IfFileExists(Enum): ADDSUFFIX=0; OVERWRITE=1; EXIT=2
class Verbosity(Enum): SILENT=0; WARNING=1; INFO=2; VERBOSE=3; DEBUG=4


#
# module data
#
AppName = "rpiraw2dng"
IfFileExistsStrs = [x.name for x in IfFileExists]
VerbosityStrs = [x.name for x in Verbosity]
Config = types.SimpleNamespace()
OutputExtension = ".dng"


#
# verify all optional modules we need are installed before we attempt to import them.
# this allows us to display a user-friendly message for the missing modules instead of the
# python-generated error message for missing imports
#
if __name__ == "__main__":
    def verifyRequiredModulesInstalled():
        RequiredModule = NamedTuple('RequiredModule', [('importName', str), ('pipInstallName', str)])
        requiredModules = [
            RequiredModule(importName="PIL", pipInstallName="pillow"),
            RequiredModule(importName="numpy", pipInstallName="numpy"),
            RequiredModule(importName="tifffile", pipInstallName="tifffile"),
        ]
        missingModules = list()
        for requiredModule in requiredModules:
            try:
                importlib.import_module(requiredModule.importName)
            except ImportError:
                missingModules.append(requiredModule)
        if missingModules:
            print(f"Run the following commands to install required modules before using {AppName}:\n")
            for requiredModule in missingModules:
                print(f"\tpip install {requiredModule.pipInstallName}")
            print("")
            sys.exit(1)

    verifyRequiredModulesInstalled()


#
# import our modules now we've established the optional modules they use are available
#
from   calibration import defaultCalibration, resolveCalibration
from   dngtags import AppVersion, synthesizeDngTags
from   dngwriter import DngWriter
from   exifsource import ExifSource
from   rawdata import FlipTransform, flipTransformFromFlags, iterUnpackedRows, locateRawData, resolveCfaPattern
from   rawerrors import CalibrationParseError, ConversionError
from   sensorformats import SensorFormat, SupportedFormats, detectSensorFormat


#
# methods to handle conditional printing based on user-specified verbosity level
#
def isVerbose() -> bool:
    return Config.args.verbosity.value >= Verbosity.VERBOSE.value
def printA(string: str): # print "always"
    print(string, file=sys.stderr)
def printIfVerbosityAllows(string: str, requiredVerbosityLevel: Verbosity) -> None:
    if hasattr(Config, "args"):
        if Config.args.verbosity.value >= requiredVerbosityLevel.value:
            printA(string)
    else:
        # called before we've initialized Config.args
        printA(string)
def printE(string: str): # print error
    printA(f"ERROR: {string}")
def printW(string: str): # print warnings, if verbosity config allows
    printIfVerbosityAllows(f"WARNING: {string}", Verbosity.WARNING)
def printI(string: str): # print "informational" messages, if verbosity config allows
    printIfVerbosityAllows(f"INFO: {string}", Verbosity.INFO)
def printV(string: str): # print "verbose" messages, if verbosity config allows
    printIfVerbosityAllows(f"VERBOSE: {string}", Verbosity.VERBOSE)
def printD(string: str): # print "debug" messages, if verbosity config allows
    printIfVerbosityAllows(f"DEBUG: {string}", Verbosity.DEBUG)


def getScriptDir() -> str:

    """
    Returns absolute path to the directory this script is running in

    :return: Absolute dirctory
    """

    return os.path.dirname(os.path.realpath(__file__))


def processCmdLine(argv: Optional[List[str]] = None) -> argparse.Namespace:

    """
    Processes the command line

    :param argv: Arguments to parse (without the program name). Default is sys.argv[1:]
    :return: Parsed arguments, or None if error
    """

    # custom ArgumentParser that throws exception on parsing error
    class ArgumentParserError(Exception): pass # from http://stackoverflow.com/questions/14728376/i-want-python-argparse-to-throw-an-exception-rather-than-usage
    class ArgumentParserWithException(argparse.ArgumentParser):
        def error(self, message):
            raise ArgumentParserError(message)

    # converts comma-separated string to a list of floats
    def commaSeparatedFloatListForArg(string: str) -> List[float]:
        try:
            return [float(item.strip()) for item in string.split(',')]
        except ValueError:
            raise argparse.ArgumentTypeError(f"Comma-separated numbers expected but '{string}' was specified")

    # validates a color matrix, keeping it in its string form for the calibration resolver
    def colorMatrixForArg(string: str) -> str:
        values = commaSeparatedFloatListForArg(string)
        if len(values) != 9:
            raise argparse.ArgumentTypeError(f"Color matrix needs 9 comma-separated values but {len(values)} were specified")
        return string

    if argv is None:
        argv = sys.argv[1:]

    # arg parser that throws exceptions on errors
    parser = ArgumentParserWithException(prog=AppName, fromfile_prefix_chars='!',\
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description='Extracts the raw sensor data from Raspberry Pi camera JPEGs (raspistill --raw) into DNG files',\
        epilog="Options can also be specified from a file. Use !<filename>. Each word in the file must be on its own line.\n\nYou "\
            "can abbreviate any argument name provided you use enough characters to uniquely distinguish it from other argument names.\n")

    parser.add_argument('inputfilenames', nargs='+', metavar="<jpg filename>", help="Required: One or more JPEGs captured with raspistill --raw")
    parser.add_argument('-H', dest='fliphorz', action='store_true', help="Assume horizontal flip (option -HF of raspistill)")
    parser.add_argument('-V', dest='flipvert', action='store_true', help="Assume vertical flip (option -VF of raspistill)")
    parser.add_argument('-o', dest='outputfilename', type=str, metavar="<output filename>", help="Create <output filename> instead of the input filename with a .dng extension. Only allowed with a single input file.", default=None, required=False)
    parser.add_argument('-M', dest='matrix', type=colorMatrixForArg, metavar="m00,m01,...,m22", help="Use the given color matrix instead of the one embedded in the JPEG. Values above 1.0 are scaled down to unity.", default=None, required=False)
    parser.add_argument('--outputdir', type=str, metavar="<path>", help="Directory to store DNG(s) to. Default is the directory of each input file. If path contains any spaces enclose it in double quotes. Example: --outputdir \"c:\\My Documents\"", default=None, required=False)
    parser.add_argument('--ifexists', type=str.upper, choices=IfFileExistsStrs, default='OVERWRITE', required=False, help="""Action to take if the output file already exists. Default is \"%(default)s\". \"ADDSUFFIX\" adds a
        suffix to the output filename to create a unique filename.""")

    troubleshootingOptions = parser.add_argument_group("Troubleshooting Options", "These options help in troubleshooting issues")
    troubleshootingOptions.add_argument('--showperfstats', action='store_true', help="Show performance statistics. Implicitly enabled when --verbosity is >= VERBOSE")
    troubleshootingOptions.add_argument('--verbosity', type=str.upper, choices=VerbosityStrs, default="INFO", required=False, help="Verbosity of output during execution. Default is %(default)s.")

    if len(argv) == 0:
        # print help if no parameters passed
        parser.print_help()
        return None

	#
	# if there is a default arguments file present, add it to the argument list so that parse_args() will process it
	#
    defaultOptionsFilename = os.path.join(getScriptDir(), f".{AppName}-defaultoptions")
    if os.path.isfile(defaultOptionsFilename):
        argv = ["!" + defaultOptionsFilename] + list(argv) # insert as first arg, so that the options in the file can still be overriden by user-entered cmd line options

    # perform the argparse
    try:
        args = parser.parse_args(argv)
    except ArgumentParserError as e:
        printA("Command line error: " + str(e))
        return None

    # prevent user from setting output file name when multiple files are supplied
    if args.outputfilename is not None and len(args.inputfilenames) > 1:
        printA("Command line error: -o can only be used with a single input file")
        return None

    # do post-processing/conversion of args
    args.ifexists = IfFileExists[args.ifexists]       # convert from str to enumerated value
    args.verbosity = Verbosity[args.verbosity]        # convert from str to enumerated value
    args.flip = flipTransformFromFlags(args.fliphorz, args.flipvert)

    return args


def generateUniqueFilenameFromExistingIfNecessary(fullPath: Path) -> Path:

    """
    If a file with the specified name exists, adds a numerical suffix to the filename
    to make it a unique filename for the path the file is in

    :param fullPath: Full path to original filename
    :return: fullPath if a file with that name doesn't already exist, or a
    fullPath with a unique suffix
    """

    seqNum = 0; seqNumStr = "" # first candidate is without a suffix
    while True:
        filenameCandidate = fullPath.with_name(fullPath.stem + seqNumStr + fullPath.suffix)
        if not filenameCandidate.exists():
            return filenameCandidate
        seqNum += 1
        seqNumStr = f"-{seqNum}"


def generateOutputFilename(inputFilename: str, outputFilename: Optional[str], outputDir: Optional[str], ifExists: IfFileExists) -> Optional[str]:

    """
    Generates the filename of the DNG for an input file

    :param inputFilename: Input JPEG filename
    :param outputFilename: User-specified output filename, or None to derive it from the input filename
    :param outputDir: Directory to place the output in, or None to keep the directory of the (input or specified output) filename
    :param ifExists: Action to take if the output file already exists
    :return: Output filename, or None if output filename couldn't be determined.
    """

    if outputFilename is None:
        # replace the extension, whatever its length. input names without one get .dng appended
        outputPath = Path(inputFilename).with_suffix(OutputExtension)
    else:
        outputPath = Path(outputFilename)
    if outputDir is not None:
        outputPath = Path(outputDir) / outputPath.name

    match ifExists:
        case IfFileExists.ADDSUFFIX:
            outputPath = generateUniqueFilenameFromExistingIfNecessary(outputPath)
        case IfFileExists.OVERWRITE:
            pass
        case IfFileExists.EXIT:
            if outputPath.exists():
                printE(f"Output file \"{outputPath}\" already exists. Skipping per --ifexists setting")
                return None

    return str(outputPath)


def printExecutionTime(desc: str, timeElapsed: float, showPerfStats: bool) -> None:

    """
    Prints the execution time of an operation

    :param desc: Text description of operation
    :param timeElapsed: Execution time of operation (from time.perf_counter)
    :param showPerfStats: True to print regardless of verbosity
    :return: None
    """

    if showPerfStats or (hasattr(Config, "args") and isVerbose()):
        printA(f"Perf: Completed {desc} in {timeElapsed / (1/1000):.2f} ms")


def formatMatrix(matrix: Sequence[float]) -> str:
    return "\n".join("\t" + "\t".join(f"{x:.4f}" for x in matrix[row*3 : row*3+3]) for row in range(3))


def processFile(inputFilename: str, outputFilename: Optional[str] = None, matrix: Optional[str] = None, flip: FlipTransform = FlipTransform.NONE,
        outputDir: Optional[str] = None, ifExists: IfFileExists = IfFileExists.OVERWRITE, formats: Sequence[SensorFormat] = SupportedFormats,
        showPerfStats: bool = False) -> bool:

    """
    Converts a single Raspberry Pi raw JPEG into a DNG

    :param inputFilename: JPEG to convert
    :param outputFilename: DNG to create, or None to use inputFilename with a .dng extension
    :param matrix: Color matrix (9 comma-separated values) to use instead of the embedded one, or None
    :param flip: Flip the image was captured with
    :param outputDir: Directory for the DNG, or None for the directory of the input/output filename
    :param ifExists: Action to take if the DNG already exists
    :param formats: Sensor formats to match the JPEG against
    :param showPerfStats: Print how long unpacking/writing took
    :return: False if successful, True if error
    """

    try:
        exif = ExifSource.fromFile(inputFilename)

        sensorFormat = detectSensorFormat(exif.model, formats)
        printI(f"Model: {sensorFormat.modelId}")

        with open(inputFilename, 'rb') as f:

            # location in file the raw pixel data starts
            rawLocation = locateRawData(f, sensorFormat)
            printV(f"Found RAW data @ offset {rawLocation.pixelOffset:,}")

            cfaPattern = resolveCfaPattern(sensorFormat.cfaPattern, flip)
            printD(f"CFA pattern: {[color.name for color in cfaPattern]}")

            makerNote = exif.makerNote
            if matrix is None and not makerNote:
                printW("JPEG does not contain MakerNotes! Will use default color matrix.")
            try:
                calibration = resolveCalibration(sensorFormat, makerNote, matrix)
            except CalibrationParseError as e:
                printW(f"{e}. Will use default color matrix.")
                calibration = defaultCalibration(sensorFormat)
            printV(f"Using color matrix ({calibration.source.name}):\n{formatMatrix(calibration.colorMatrix)}")
            printD(f"As-shot neutral: {calibration.neutral}")

            tagSet = synthesizeDngTags(sensorFormat, cfaPattern, calibration, exif, originalFilename=inputFilename)

            dngFilename = generateOutputFilename(inputFilename, outputFilename, outputDir, ifExists)
            if dngFilename is None:
                return True
            printI(f"Creating {dngFilename}...")

            with DngWriter(dngFilename) as writer:
                writer.setTags(tagSet)
                writer.beginImage()

                # unpack and copy RAW data
                timeStart = time.perf_counter()
                for row, samples in iterUnpackedRows(f, rawLocation):
                    writer.writeRow(row, samples)
                printExecutionTime("unpacking RAW data", time.perf_counter() - timeStart, showPerfStats)

                timeStart = time.perf_counter()
                writer.close()
                printExecutionTime("writing DNG", time.perf_counter() - timeStart, showPerfStats)

    except (ConversionError, OSError) as e:
        printE(f"\"{inputFilename}\": {e}")
        return True

    printI(f"Successfully generated \"{os.path.realpath(dngFilename)}\"")
    return False


def convertFiles(inputFilenames: Sequence[str], outputFilename: Optional[str] = None, matrix: Optional[str] = None, flip: FlipTransform = FlipTransform.NONE,
        outputDir: Optional[str] = None, ifExists: IfFileExists = IfFileExists.OVERWRITE, formats: Sequence[SensorFormat] = SupportedFormats,
        showPerfStats: bool = False) -> int:

    """
    Converts a batch of files, one at a time. Each file is converted independently - a failure
    is reported and we move on to the next file

    :return: Number of files that failed to convert
    """

    countFailed = 0
    for inputFilename in inputFilenames:
        printI(f"{inputFilename}:")
        if processFile(inputFilename, outputFilename, matrix, flip, outputDir, ifExists, formats, showPerfStats):
            countFailed += 1
    return countFailed


def run(argv: Optional[List[str]] = None) -> bool:

    """
    main module routine

    :param argv: Command line arguments (without the program name). Default is sys.argv[1:]
    :return: False if all input files were attempted (even if some of them failed), True if command line error
    """

    # process the cmd line
    Config.args = processCmdLine(argv)
    if Config.args is None:
        del Config.args
        return True

    printI(f"{AppName} v{AppVersion}")
    printD(f"Args: {Config.args}")

    if Config.args.flip != FlipTransform.NONE:
        printW("You have enabled flipping. A better way is to record as is, and then flip in the photo processing software, e.g. darktable.")

    countFailed = convertFiles(Config.args.inputfilenames, Config.args.outputfilename, Config.args.matrix, Config.args.flip,
        Config.args.outputdir, Config.args.ifexists, showPerfStats=Config.args.showperfstats)
    if countFailed:
        printW(f"{countFailed} of {len(Config.args.inputfilenames)} file(s) failed to convert")

    return False


def main() -> None:
    fError = run()
    sys.exit(fError)


if __name__ == "__main__":
    main()
