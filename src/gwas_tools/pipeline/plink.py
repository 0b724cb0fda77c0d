# coding: utf-8
##########################################################################
# NSAp - Copyright (C) CEA, 2023
# Distributed under the terms of the CeCILL-B license, as published by
# the CEA-CNRS-INRIA. Refer to the LICENSE file or to
# http://www.cecill.info/licences/Licence_CeCILL-B_V1-en.html
# for details.
# Antoine Dufournet
##########################################################################
"""
Invocation of the PLINK 1.9 command line.

Every call goes through ``run_command`` and comes back as a
``CommandResult``. Each process is started in its own session so that a
cancelled or timed out run can be stopped with all of its children.
"""
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from gwas_tools.utils import GwasToolsError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2
KILL_GRACE = 5.0
BFILE_SUFFIXES = (".bed", ".bim", ".fam")


class PipelineCancelled(GwasToolsError):
    """The run was cancelled from outside."""


@dataclass
class CommandResult:
    args: list
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self):
        return self.returncode == 0 and not self.timed_out

    @property
    def command(self):
        return " ".join(str(a) for a in self.args)

    def tail(self, n=5):
        """Last lines of stderr (stdout when stderr is empty)."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-n:])

    def check(self, context=None):
        if not self.ok:
            raise PlinkError(self, context)
        return self


class PlinkError(GwasToolsError):
    """External command failed, timed out, or did not write its outputs."""

    def __init__(self, result, context=None, reason=None):
        self.result = result
        self.context = context
        if reason is None:
            if result.timed_out:
                reason = "timed out"
            else:
                reason = f"exited with status {result.returncode}"
        where = f"[{context}] " if context else ""
        message = f"{where}{result.command} {reason}"
        tail = result.tail()
        if tail:
            message += f":\n{tail}"
        super().__init__(message)


def _terminate(proc):
    """Stop the whole process group of ``proc``."""
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()


def run_command(args, timeout=None, cancel=None):
    """
    Run an external command and capture its outcome.

    Parameters
    ----------
    args : list
        Program and arguments, no shell interpretation.
    timeout : float, optional
        Seconds after which the process group is terminated.
    cancel : threading.Event, optional
        When set, the process group is terminated and
        ``PipelineCancelled`` is raised.

    Returns
    -------
    CommandResult
        An executable that cannot be started gives returncode 127 instead
        of raising.
    """
    args = [str(a) for a in args]
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled(f"Cancelled before running: {' '.join(args)}")
    try:
        proc = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                text=True, start_new_session=True)
    except OSError as e:
        return CommandResult(args, 127, "", str(e))

    deadline = time.monotonic() + timeout if timeout else None
    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                return CommandResult(args, proc.returncode, stdout, stderr)
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                _terminate(proc)
                proc.communicate()
                raise PipelineCancelled(f"Cancelled while running: {' '.join(args)}")
            if deadline is not None and time.monotonic() >= deadline:
                _terminate(proc)
                stdout, stderr = proc.communicate()
                return CommandResult(args, proc.returncode, stdout, stderr, timed_out=True)
    except KeyboardInterrupt:
        # The child lives in its own session and does not see the SIGINT.
        _terminate(proc)
        raise


def qc_command(plink, genotype, trait_file, qc, out_prefix):
    return [
        plink,
        qc.file_format.flag, genotype,
        "--keep", trait_file,
        "--const-fid",
        "--geno", str(qc.call_rate),
        "--maf", str(qc.maf),
        "--make-bed",
        "--out", out_prefix,
    ]


def pca_command(plink, bfile_prefix, dimensions, out_prefix):
    return [plink, "--bfile", bfile_prefix, "--pca", str(dimensions), "--out", out_prefix]


def merge_command(plink, first_prefix, merge_list, out_prefix):
    return [
        plink,
        "--bfile", first_prefix,
        "--merge-list", merge_list,
        "--make-bed",
        "--out", out_prefix,
    ]


def association_command(plink, bfile_prefix, trait_file, covariates, out_prefix):
    return [
        plink,
        "--bfile", bfile_prefix,
        "--pheno", trait_file,
        "--all-pheno",
        "--covar", covariates,
        "--linear",
        "--adjust",
        "--allow-no-sex",
        "--out", out_prefix,
    ]


def association_output(out_prefix, trait):
    """Per-trait result file written by ``--all-pheno --linear``."""
    return Path(f"{out_prefix}.{trait}.assoc.linear")


class Plink:
    """
    PLINK executable bound to a timeout and a cancel event.

    Each step method raises ``PlinkError`` when the command fails or when
    its expected output is missing, and returns the produced path.
    """

    def __init__(self, executable="plink", timeout=None, cancel=None):
        self.executable = executable
        self.timeout = timeout
        self.cancel = cancel

    def run(self, args, context=None):
        logger.info("Running PLINK%s: %s", f" [{context}]" if context else "",
                    " ".join(str(a) for a in args))
        result = run_command(args, timeout=self.timeout, cancel=self.cancel)
        result.check(context)
        if result.stdout:
            logger.debug("\n".join(result.stdout.splitlines()[-5:]))
        return result

    def _expect(self, result, paths, context):
        missing = [str(p) for p in paths if not Path(p).exists()]
        if missing:
            raise PlinkError(result, context, reason=f"produced no output ({', '.join(missing)})")

    def qc(self, genotype, trait_file, qc, out_prefix, context=None):
        result = self.run(qc_command(self.executable, genotype, trait_file, qc, out_prefix),
                          context)
        self._expect(result, [f"{out_prefix}{s}" for s in BFILE_SUFFIXES], context)
        return Path(out_prefix)

    def pca(self, bfile_prefix, dimensions, out_prefix, context=None):
        result = self.run(pca_command(self.executable, bfile_prefix, dimensions, out_prefix),
                          context)
        eigenvec = Path(f"{out_prefix}.eigenvec")
        self._expect(result, [eigenvec], context)
        return eigenvec

    def merge(self, prefixes, out_prefix, context=None):
        prefixes = [str(p) for p in prefixes]
        merge_list = Path(f"{out_prefix}.mergelist")
        merge_list.write_text("".join(f"{p}\n" for p in prefixes[1:]))
        result = self.run(merge_command(self.executable, prefixes[0], merge_list, out_prefix),
                          context)
        self._expect(result, [f"{out_prefix}{s}" for s in BFILE_SUFFIXES], context)
        return Path(out_prefix)

    def association(self, bfile_prefix, trait_file, covariates, traits, out_prefix,
                    context=None):
        """
        Linear association of every trait column; returns ``{trait: path}``
        for the result files that were written.
        """
        result = self.run(association_command(self.executable, bfile_prefix, trait_file,
                                              covariates, out_prefix), context)
        outputs = {t: association_output(out_prefix, t) for t in traits}
        written = {t: p for t, p in outputs.items() if p.exists()}
        if not written:
            self._expect(result, list(outputs.values()), context)
        return written


def remove_bfile(prefix):
    """Delete a binary fileset and the PLINK log next to it."""
    for suffix in BFILE_SUFFIXES + (".log", ".nosex", ".mergelist"):
        path = Path(f"{prefix}{suffix}")
        if path.exists():
            path.unlink()
