"""Config-driven pipeline entrypoints."""


def run_preprocessing(*args, **kwargs):
    from cytofda.pipeline.run import run_preprocessing as _run_preprocessing

    return _run_preprocessing(*args, **kwargs)


def run_analysis(*args, **kwargs):
    from cytofda.pipeline.run import run_analysis as _run_analysis

    return _run_analysis(*args, **kwargs)


__all__ = ["run_preprocessing", "run_analysis"]
