import os
import logging


# Stream handler for the command line; the library itself only logs into the
# `stencil` logger and leaves handlers to its host.
def _get_logger(name):
    if os.environ.get('STENCIL_DEBUG') == '1':
        level = logging.DEBUG
    else:
        level = logging.INFO

    if 'JOURNAL_STREAM' in os.environ:
        fmt = '[%(levelname)s] %(message)s'
    else:
        fmt = '%(asctime)s [%(levelname)s] %(message)s'

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    h = logging.StreamHandler()
    h.setLevel(level)
    h.setFormatter(logging.Formatter(fmt))
    logger.addHandler(h)

    return logger


log = logging.getLogger('stencil')
log.addHandler(logging.NullHandler())
if os.environ.get('STENCIL_DEBUG') == '1':
    log.setLevel(logging.DEBUG)

is_tracing = os.environ.get('TRACE') == '1' and log.isEnabledFor(logging.DEBUG)
trace = log.debug if is_tracing else lambda *_: None


def shorten(s: str | None, max_len: int = 64) -> str:
    if s is None:
        return 'None'
    s = s.strip().replace('\n', ' ').replace('\r', ' ')
    if len(s) <= max_len:
        return s
    return s[: max_len // 2] + '...' + s[-(max_len // 2) :]
