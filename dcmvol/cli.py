'''Command line interface'''
from __future__ import annotations
import sys, os, logging
import asyncio
from contextlib import ExitStack
from typing import Any, Dict, List, Optional, Tuple

import click
import numpy as np
import toml
from rich.console import Console
from rich.progress import Progress
from rich.logging import RichHandler

from ._globals import HierarchyLevel
from .conf import CONF_PATH, DcmVolConfig, InvalidConfigError, ParseConfig
from .hierarchy import DicomHierarchy, MissingKeyPolicy
from .parse import ParseDicomError, ParseReport, find_dicom_files, parse_dicom_files
from .report import RichProgressHook
from .util import DicomDataError, json_serializer
from .volume import SliceOrder


log = logging.getLogger('dcmvol.cli')


def cli_error(msg: str, exit_code: int = 1) -> None:
    '''Print msg to stderr and exit with non-zero exit code'''
    click.secho(msg, err=True, fg='red')
    sys.exit(exit_code)


@click.group()
@click.option('--config',
              type=click.Path(dir_okay=False,
                              readable=True,
                              resolve_path=True),
              envvar='DCMVOL_CONF_PATH',
              default=CONF_PATH,
              help="Path to TOML config file",
             )
@click.option('--log-path',
              type=click.Path(dir_okay=False,
                              readable=True,
                              writable=True,
                              resolve_path=True),
              envvar='DCMVOL_LOG_PATH',
              help="Save logging output to this file")
@click.option('--file-log-level',
              type=click.Choice(['DEBUG', 'INFO', 'WARN', 'ERROR'],
                                case_sensitive=False),
              default='INFO',
              help="Log level to use when logging to a file")
@click.option('--verbose', '-v',
              is_flag=True,
              default=False,
              help="Print INFO log messages")
@click.option('--debug',
              is_flag=True,
              default=False,
              help="Print DEBUG log messages")
@click.option('--quiet',
              is_flag=True,
              default=False,
              help="Hide WARNING and below log messages")
@click.option('--pydicom-log-level',
              type=click.Choice(['DEBUG', 'INFO', 'WARN', 'ERROR'],
                                case_sensitive=False),
              default='WARN',
              help="Control log level for lower level pydicom package")
@click.pass_context
def cli(ctx, config, log_path, file_log_level, verbose, debug, quiet,
        pydicom_log_level):
    '''Parse DICOM files into a patient/study/series/image hierarchy
    and rebuild image volumes from them
    '''
    if quiet:
        if verbose or debug:
            cli_error("Can't mix --quiet with --verbose/--debug")

    # Setup logging
    LOG_FORMAT = '%(asctime)s %(levelname)s %(threadName)s %(name)s %(message)s'
    def_formatter = logging.Formatter(LOG_FORMAT)
    root_logger = logging.getLogger('')
    root_logger.setLevel(logging.DEBUG)
    pydicom_logger = logging.getLogger('pydicom')
    pydicom_logger.setLevel(getattr(logging, pydicom_log_level.upper()))
    stream_formatter = logging.Formatter('%(threadName)s %(name)s %(message)s')
    stream_handler = RichHandler(console=Console(stderr=True), enable_link_path=False)
    stream_handler.setFormatter(stream_formatter)
    if debug:
        stream_handler.setLevel(logging.DEBUG)
    elif verbose:
        stream_handler.setLevel(logging.INFO)
    elif quiet:
        stream_handler.setLevel(logging.ERROR)
    else:
        stream_handler.setLevel(logging.WARN)
    root_logger.addHandler(stream_handler)
    if log_path is not None:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(def_formatter)
        file_handler.setLevel(getattr(logging, file_log_level.upper()))
        root_logger.addHandler(file_handler)

    # Create global param dict for subcommands to use
    ctx.obj = {}
    ctx.obj['config_path'] = config
    try:
        ctx.obj['config'] = DcmVolConfig(config, create_if_missing=True)
    except InvalidConfigError as e:
        cli_error(f"Invalid config file {config}: {e}")


@click.command()
@click.pass_obj
@click.option('--show', is_flag=True,
              help="Just print the current config contents")
@click.option('--path', is_flag=True,
              help="Just print the current config path")
def conf(params, show, path):
    '''Open the config file with your $EDITOR'''
    config_path = params['config_path']
    if path:
        click.echo(config_path)
    if show:
        with open(config_path, 'r') as f:
            click.echo(f.read())
    if path or show:
        return
    err = False
    while True:
        click.edit(filename=config_path)
        try:
            DcmVolConfig(config_path)
        except (toml.TomlDecodeError, InvalidConfigError) as e:
            err = True
            click.echo("The config file contains an error: %s" % e)
            click.echo("The editor will be reopened so you can correct the error")
            click.pause()
        else:
            if err:
                click.echo("Config file is now valid")
            break


def _parse_paths(parse_conf: ParseConfig,
                 paths: Tuple[str, ...],
                 no_progress: bool) -> DicomHierarchy:
    '''Find and parse all the files under `paths`, exits on errors'''
    try:
        files = find_dicom_files(paths, parse_conf.recurse, parse_conf.file_ext)
    except FileNotFoundError as e:
        cli_error(str(e))
    if not files:
        cli_error("No DICOM files found")
    log.info("Parsing %d files", len(files))
    with ExitStack() as estack:
        if not no_progress:
            prog = RichProgressHook(estack.enter_context(Progress(transient=True)))
            report = ParseReport(description='parse', prog_hook=prog)
        else:
            report = ParseReport(description='parse')
        try:
            res = asyncio.run(parse_dicom_files(files,
                                                report=report,
                                                **parse_conf.to_kwargs()))
        except ParseDicomError as e:
            report.log_issues()
            cli_error(str(e))
    report.log_issues()
    return res.patients


def _parse_options(func: Any) -> Any:
    '''Decorate a command with the options that override the [parse] config'''
    opts = [
        click.option('--ignore-failed/--no-ignore-failed', default=None,
                     help="Keep going if some files can't be parsed"),
        click.option('--max-threads', type=int,
                     help="Max number of worker threads"),
        click.option('--file-ext',
                     help="Extension for files found in directories, empty "
                     "string for any file"),
        click.option('--recurse/--no-recurse', default=None,
                     help="Look in sub-directories for files"),
        click.option('--missing-key',
                     type=click.Choice([p.value for p in MissingKeyPolicy],
                                       case_sensitive=False),
                     help="How to handle files missing a primary tag"),
        click.option('--no-progress', is_flag=True,
                     help="Don't display progress bars"),
    ]
    for opt in reversed(opts):
        func = opt(func)
    return func


def _get_parse_conf(params: Dict[str, Any],
                    ignore_failed: Optional[bool],
                    max_threads: Optional[int],
                    file_ext: Optional[str],
                    recurse: Optional[bool],
                    missing_key: Optional[str]) -> ParseConfig:
    try:
        return params['config'].get_parse_config(
            ignore_failed_files=ignore_failed,
            max_threads=max_threads,
            file_ext=file_ext,
            recurse=recurse,
            missing_key=missing_key,
        )
    except (TypeError, ValueError) as e:
        cli_error(str(e))


@click.command()
@click.pass_obj
@click.argument('paths', type=click.Path(exists=True), nargs=-1, required=True)
@_parse_options
@click.option('--out-format', type=click.Choice(['tree', 'json']),
              help="Output format, defaults to 'tree' for a terminal and "
              "'json' otherwise")
@click.option('--max-level',
              type=click.Choice([l.name.lower() for l in HierarchyLevel]),
              default='image',
              help="Deepest level to include in tree output")
def tree(params, paths, ignore_failed, max_threads, file_ext, recurse,
         missing_key, no_progress, out_format, max_level):
    '''Parse DICOM files and print the patient/study/series/image hierarchy'''
    if sys.stdout.isatty():
        if out_format is None:
            out_format = 'tree'
    else:
        no_progress = True
        if out_format is None:
            out_format = 'json'
    parse_conf = _get_parse_conf(params, ignore_failed, max_threads, file_ext,
                                 recurse, missing_key)
    hierarchy = _parse_paths(parse_conf, paths, no_progress)
    if out_format == 'tree':
        out = hierarchy.to_tree(max_level=HierarchyLevel[max_level.upper()])
    else:
        out = hierarchy.to_json()
    click.echo(out)


def _split_series_path(series_path: str) -> List[str]:
    toks = series_path.split('/')
    if len(toks) != 3 or not all(toks):
        cli_error("The series must be given as PATIENT_ID/STUDY_ID/SERIES_NUMBER")
    return toks


@click.command()
@click.pass_obj
@click.argument('paths', type=click.Path(exists=True), nargs=-1, required=True)
@click.option('--series', 'series_path', required=True,
              help="The series to reconstruct, as PATIENT_ID/STUDY_ID/SERIES_NUMBER")
@_parse_options
@click.option('--slice-order',
              type=click.Choice([s.name.lower() for s in SliceOrder]),
              help="How to order the slices in the volume")
@click.option('--out', type=click.Path(dir_okay=False, writable=True),
              help="Save the voxel data and geometry to this .npz file")
def volume(params, paths, series_path, ignore_failed, max_threads, file_ext,
           recurse, missing_key, no_progress, slice_order, out):
    '''Rebuild the image volume for a single series'''
    if not sys.stdout.isatty():
        no_progress = True
    patient_id, study_id, series_num = _split_series_path(series_path)
    parse_conf = _get_parse_conf(params, ignore_failed, max_threads, file_ext,
                                 recurse, missing_key)
    try:
        vol_conf = params['config'].get_volume_config(slice_order=slice_order)
    except (TypeError, ValueError) as e:
        cli_error(str(e))
    hierarchy = _parse_paths(parse_conf, paths, no_progress)
    try:
        series = hierarchy.get_series(patient_id, study_id, series_num)
    except KeyError:
        cli_error(f"No series found for {series_path}")
    try:
        vol = series.get_image_data(vol_conf.slice_order)
    except DicomDataError as e:
        cli_error(f"Unable to reconstruct volume: {e}")
    geometry = vol.geometry()
    click.echo(json_serializer.dumps(geometry, indent=4))
    if out is not None:
        np.savez(out,
                 data=vol.to_array(),
                 origin=np.array(vol.origin),
                 spacing=np.array(vol.spacing),
                 direction=vol.direction_matrix(),
                 size=np.array(vol.size))
        log.info("Saved volume to %s", os.path.abspath(out))


cli.add_command(conf)
cli.add_command(tree)
cli.add_command(volume)
