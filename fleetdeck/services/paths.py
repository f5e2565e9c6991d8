import logging

from fleetdeck.core.errors import RemoteExecutionError
from fleetdeck.models.host import Host
from fleetdeck.models.remote import CONFIDENCE_RANK, DeployPathCandidate, PathConfidence
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.scripts import ScriptBuilder, quote

logger = logging.getLogger(__name__)

# Searched for .git directories, in this order. "$HOME" is expanded remotely.
REPO_SEARCH_ROOTS = ("$HOME", "/var/www", "/srv", "/opt")
REPO_SEARCH_DEPTH = 3
WEB_ROOTS = ("/var/www/html", "/var/www", "/srv/www", "/srv/http", "/usr/share/nginx/html")

_TAGS = {
    "repo": PathConfidence.EXISTING_REPO,
    "web": PathConfidence.WRITABLE_WEB_ROOT,
    "home": PathConfidence.HOME_FALLBACK,
}
_REASONS = {
    PathConfidence.EXISTING_REPO: "Existing git repository",
    PathConfidence.WRITABLE_WEB_ROOT: "Writable web root",
    PathConfidence.HOME_FALLBACK: "Home directory of the SSH user",
}


def build_detect_script() -> ScriptBuilder:
    """One round trip: home directory, git checkouts, then writable web roots.

    Output is one ``<tag>\\t<path>`` line per finding.
    """
    roots = " ".join('"$HOME"' if root == "$HOME" else quote(root) for root in REPO_SEARCH_ROOTS)
    web_roots = " ".join(quote(root) for root in WEB_ROOTS)
    script = ScriptBuilder(fail_fast=False)
    script.raw("printf 'home\\t%s\\n' \"$HOME\"")
    script.raw(f"for root in {roots}; do")
    script.raw(
        f"  [ -d \"$root\" ] && find \"$root\" -maxdepth {REPO_SEARCH_DEPTH} -type d -name .git -prune 2>/dev/null"
        " | LC_ALL=C sort | while IFS= read -r d; do printf 'repo\\t%s\\n' \"${d%/.git}\"; done"
    )
    script.raw("done")
    script.raw(f"for dir in {web_roots}; do")
    script.raw("  if [ -d \"$dir\" ] && [ -w \"$dir\" ]; then printf 'web\\t%s\\n' \"$dir\"; fi")
    script.raw("done")
    script.raw("exit 0")
    return script


def rank_candidates(stdout: str) -> list[DeployPathCandidate]:
    """Parses probe output into candidates ordered by confidence.

    Within one confidence level the probe's own output order is kept; a path
    reported twice keeps only its best-ranked entry.
    """
    found = []
    for line in stdout.splitlines():
        tag, sep, path = line.partition("\t")
        if not sep or tag not in _TAGS:
            continue
        path = path.strip()
        if not path.startswith("/"):
            continue
        found.append((_TAGS[tag], path))

    # sorted() is stable, so ties stay in declaration order
    found.sort(key=lambda item: CONFIDENCE_RANK[item[0]])

    candidates = []
    seen = set()
    for confidence, path in found:
        if path in seen:
            continue
        seen.add(path)
        candidates.append(DeployPathCandidate(path=path, confidence=confidence, reason=_REASONS[confidence]))
    return candidates


class DeployPathDetector:
    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    async def detect(self, host: Host) -> list[DeployPathCandidate]:
        result = await self.executor.execute(host, build_detect_script().as_command())
        result.check(entity_id=host.id)
        candidates = rank_candidates(result.stdout)
        if not any(c.confidence == PathConfidence.HOME_FALLBACK for c in candidates):
            raise RemoteExecutionError(
                "Path probe did not report a home directory",
                result=result,
                entity_type="host",
                entity_id=host.id,
            )
        logger.info(f"Detected {len(candidates)} deploy path candidates on host {host.id}")
        return candidates
