"""Invoke tasks for the megparcel LCMV pipeline.

This module provides organized tasks using invoke's Collection feature.
Tasks are grouped into namespaces for clean organization.

Usage:
    invoke --list                              # List all tasks
    invoke dev.test                            # Run the test suite
    invoke env.validate-config                 # Check config.yaml
    invoke pipeline.validate-inputs            # Check subject inputs
    invoke pipeline.source-recon --subject=04
    invoke pipeline.source-recon --slurm       # All subjects on HPC
    invoke pipeline.status                     # State of the last SLURM submission

Namespaces:
    dev       - Development tasks (test, clean)
    env       - Environment tasks (info, validate-config)
    pipeline  - Data processing (validate-inputs, source-recon, status)
"""

import os
from pathlib import Path

from invoke import Collection, task

# ==============================================================================
# Configuration
# ==============================================================================

PROJECT_ROOT = Path(__file__).parent
PKG_DIR = PROJECT_ROOT / "megparcel"
TESTS_DIR = PROJECT_ROOT / "tests"


def get_python_executable():
    """Get the Python executable, preferring venv if it exists."""
    venv_python = PROJECT_ROOT / "env" / "bin" / "python"
    if venv_python.exists():
        return str(venv_python)
    return "python"


def get_env_with_pythonpath():
    """Get environment dict with PYTHONPATH set to project root."""
    env = os.environ.copy()
    env["PYTHONPATH"] = str(PROJECT_ROOT)
    return env


# ==============================================================================
# dev.* Tasks - Development
# ==============================================================================

@task
def test(c, verbose=False, coverage=True, markers=None):
    """Run tests with pytest.

    Examples:
        invoke dev.test
        invoke dev.test --verbose
        invoke dev.test --markers="not slow"
    """
    cmd = ["pytest", str(TESTS_DIR)]
    if verbose:
        cmd.append("-v")
    if coverage:
        cmd.extend(["--cov=megparcel", "--cov-report=term-missing"])
    if markers:
        cmd.append(f"-m '{markers}'")

    print(f"Running: {' '.join(cmd)}")
    c.run(" ".join(cmd), pty=True, env=get_env_with_pythonpath())


@task
def clean(c, bytecode=True, cache=True, coverage=True, build=True, logs=False):
    """Clean generated files.

    Examples:
        invoke dev.clean
        invoke dev.clean --logs
    """
    patterns = []
    if bytecode:
        patterns.extend(["**/__pycache__", "**/*.pyc", "**/*.pyo"])
    if cache:
        patterns.extend([".pytest_cache", ".mypy_cache", ".ruff_cache"])
    if coverage:
        patterns.extend(["htmlcov", ".coverage", "coverage.xml"])
    if build:
        patterns.extend(["**/*.egg-info", "build", "dist"])
    if logs:
        patterns.append("logs")

    print("Cleaning generated files...")
    removed_count = 0

    for pattern in patterns:
        if "**" in pattern:
            for path in PROJECT_ROOT.rglob(pattern.replace("**/", "")):
                if path.exists():
                    if path.is_file():
                        path.unlink()
                        removed_count += 1
                    elif path.is_dir():
                        c.run(f"rm -rf {path}", hide=True)
                        removed_count += 1
        else:
            path = PROJECT_ROOT / pattern
            if path.exists():
                if path.is_file():
                    path.unlink()
                elif path.is_dir():
                    c.run(f"rm -rf {path}", hide=True)
                removed_count += 1

    print(f"✓ Cleaned {removed_count} items")


# ==============================================================================
# env.* Tasks - Environment Management
# ==============================================================================

@task
def info(c):
    """Display project information."""
    print("=" * 80)
    print("megparcel Project Information")
    print("=" * 80)
    print(f"Project root:     {PROJECT_ROOT}")
    print(f"Package:          {PKG_DIR}")
    print()

    config_file = PROJECT_ROOT / "config.yaml"
    print("Configuration:")
    print(f"  config.yaml: {'✓ exists' if config_file.exists() else '✗ missing'}")

    venv_dir = PROJECT_ROOT / "env"
    print(f"\nVirtual environment: {'✓ exists' if venv_dir.exists() else '✗ missing'}")

    if venv_dir.exists():
        python_exe = venv_dir / "bin" / "python"
        if python_exe.exists():
            result = c.run(f"{python_exe} --version", hide=True)
            print(f"  Python version: {result.stdout.strip()}")
    print("=" * 80)


@task
def validate_config(c):
    """Validate configuration file."""
    print("Validating configuration...")
    cmd = [
        get_python_executable(), "-c",
        "'from megparcel.utils.config import load_config; "
        "config = load_config(); "
        "print(\"✓ Configuration is valid\")'"
    ]
    c.run(" ".join(cmd), pty=True, env=get_env_with_pythonpath())


# ==============================================================================
# pipeline.* Tasks - Data Processing
# ==============================================================================

@task
def validate_inputs(c, subjects=None, verbose=False):
    """Validate that every subject input and the shared atlas are present.

    Examples:
        invoke pipeline.validate-inputs
        invoke pipeline.validate-inputs --subjects="04 05" --verbose
    """
    print("=" * 80)
    print("Validating Input Data")
    print("=" * 80)

    python_exe = get_python_executable()
    cmd = [python_exe, "-m", "megparcel.utils.validation"]

    if subjects:
        cmd.extend(["--subjects", f'"{subjects}"'])
    if verbose:
        cmd.append("--verbose")

    c.run(" ".join(cmd), pty=True, env=get_env_with_pythonpath())


@task
def source_recon(c, subject=None, kappa=None, n_jobs=1, log_level="INFO",
                 overwrite=False, slurm=False, time=None, mem=None, dry_run=False):
    """Run LCMV source reconstruction and parcellation.

    By default processes all subjects from config. Use --subject for a single subject.

    Examples:
        invoke pipeline.source-recon                      # All subjects (default)
        invoke pipeline.source-recon --subject=04         # Single subject
        invoke pipeline.source-recon --slurm              # All subjects on HPC
        invoke pipeline.source-recon --slurm --subject=04 --mem=48G   # Resubmit with more memory
    """
    print("=" * 80)
    print("LCMV Source Reconstruction")
    print("=" * 80)

    if slurm:
        _source_recon_slurm(c, subject, kappa, log_level, overwrite, time, mem, dry_run)
    else:
        _source_recon_local(c, subject, kappa, n_jobs, log_level, overwrite)


@task
def status(c, manifest=None):
    """Report the state of submitted SLURM jobs and which need a larger budget.

    Examples:
        invoke pipeline.status
        invoke pipeline.status --manifest=logs/slurm/source_reconstruction/manifest.json
    """
    from megparcel.source_reconstruction.pipeline import is_complete
    from megparcel.utils.config import load_config
    from megparcel.utils.errors import ResourceExhaustion
    from megparcel.utils.slurm import (
        check_job_status,
        load_job_manifest,
        raise_for_job_state,
        scale_budget,
    )

    config = load_config()
    log_dir = Path(config["paths"]["logs"]) / "slurm" / "source_reconstruction"

    if manifest:
        manifest_path = Path(manifest)
    else:
        manifests = sorted(log_dir.glob("source_reconstruction_manifest_*.json"))
        if not manifests:
            print(f"No job manifest found in {log_dir}")
            return
        manifest_path = manifests[-1]

    data = load_job_manifest(manifest_path)
    jobs = data.get("metadata", {}).get("jobs", {})
    print(f"Manifest: {manifest_path}\n")

    exhausted = []
    for job_id, job in jobs.items():
        subject = job["subject"]
        job_status = check_job_status(job_id)
        state = job_status["State"] if job_status else "UNKNOWN"
        done = "✓" if is_complete(config, subject) else " "
        print(f"  [{done}] sub-{subject}  job {job_id}  {state}")

        if job_status:
            try:
                raise_for_job_state(job_status)
            except ResourceExhaustion as e:
                exhausted.append((subject, job, str(e)))

    if exhausted:
        print("\nJobs that exceeded their budget:")
        for subject, job, message in exhausted:
            new_time, new_mem = scale_budget(job["time"], job["mem"])
            print(f"  sub-{subject}: {message}")
            print(f"    invoke pipeline.source-recon --slurm --subject={subject} "
                  f"--time={new_time} --mem={new_mem}")


def _source_recon_local(c, subject=None, kappa=None, n_jobs=1, log_level="INFO", overwrite=False):
    """Run source reconstruction locally."""
    python_exe = get_python_executable()
    cmd = [python_exe, "-m", "megparcel.source_reconstruction.run_source_reconstruction"]

    if subject:
        cmd.extend(["--subject", subject])
    if kappa:
        cmd.extend(["--kappa", str(kappa)])
    cmd.extend(["--n-jobs", str(n_jobs)])
    cmd.extend(["--log-level", log_level])
    if overwrite:
        cmd.append("--overwrite")

    print(f"\nRunning: {' '.join(cmd)}\n")
    c.run(" ".join(cmd), env=get_env_with_pythonpath(), pty=True)


def _source_recon_slurm(c, subject=None, kappa=None, log_level="INFO", overwrite=False,
                        time=None, mem=None, dry_run=False):
    """Submit one source reconstruction job per subject to SLURM."""
    from datetime import datetime
    from megparcel.utils.config import get_random_seed, get_subjects, load_config
    from megparcel.utils.jobs import build_job_queue
    from megparcel.utils.slurm import render_slurm_script, save_job_manifest, submit_slurm_job

    config = load_config()
    subjects = [subject] if subject else get_subjects(config)

    slurm_config = config["computing"]["slurm"]
    if not slurm_config.get("enabled", False):
        print("ERROR: SLURM is not enabled in config.yaml")
        return

    resources = slurm_config.get("source_reconstruction", {})
    if not resources:
        print("ERROR: No source_reconstruction resources in config.yaml")
        return

    venv_path = Path(config["paths"]["venv"])
    if not venv_path.is_absolute():
        venv_path = PROJECT_ROOT / venv_path

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    script_dir = PROJECT_ROOT / "slurm" / "scripts" / "source_reconstruction"
    script_dir.mkdir(parents=True, exist_ok=True)
    log_dir = Path(config["paths"]["logs"]) / "slurm" / "source_reconstruction"
    log_dir.mkdir(parents=True, exist_ok=True)

    seed = get_random_seed(config)
    queue = build_job_queue(
        subjects,
        seed=seed,
        overwrite=overwrite,
        time=time or resources["time"],
        mem=mem or resources["mem"],
    )
    print(f"\nSubjects: {len(queue)} (shuffled with seed {seed})")

    jobs = {}
    for job in queue:
        context = {
            "job_name": job.name,
            "account": slurm_config["account"],
            "partition": slurm_config.get("partition", ""),
            "cpus": resources["cpus"],
            "mem": job.mem,
            "time": job.time,
            "log_dir": str(log_dir),
            "venv_path": str(venv_path),
            "project_root": str(PROJECT_ROOT),
            "subject": job.subject,
            "kappa": kappa,
            "log_level": log_level,
            "overwrite": job.overwrite,
        }

        script_path = script_dir / f"{job.name}_{timestamp}.sh"
        render_slurm_script("source_reconstruction.sh.j2", context, output_path=script_path)

        if not dry_run:
            job_id = submit_slurm_job(script_path, job_name=job.name, dry_run=False)
            if job_id:
                jobs[job_id] = {"subject": job.subject, "time": job.time, "mem": job.mem}

    if jobs:
        manifest_path = log_dir / f"source_reconstruction_manifest_{timestamp}.json"
        save_job_manifest(list(jobs), manifest_path, metadata={
            "stage": "source_reconstruction",
            "timestamp": timestamp,
            "seed": seed,
            "jobs": jobs,
        })
        print(f"\n✓ Submitted {len(jobs)} source reconstruction jobs")


# ==============================================================================
# Build Namespace Collections
# ==============================================================================

# Development tasks
dev = Collection("dev")
dev.add_task(test)
dev.add_task(clean)

# Environment tasks
env = Collection("env")
env.add_task(info)
env.add_task(validate_config, name="validate-config")

# Pipeline tasks
pipeline = Collection("pipeline")
pipeline.add_task(validate_inputs, name="validate-inputs")
pipeline.add_task(source_recon, name="source-recon")
pipeline.add_task(status)

# Build main namespace
namespace = Collection()
namespace.add_collection(dev)
namespace.add_collection(env)
namespace.add_collection(pipeline)


# Default task
@task(default=True)
def help_task(c):
    """Show available tasks (default task)."""
    c.run("invoke --list")


namespace.add_task(help_task, name="help")
