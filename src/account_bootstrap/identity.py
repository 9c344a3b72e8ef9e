"""
account_bootstrap.identity — Federated trust provider (GitHub Actions OIDC).

One provider per account. Thumbprint rotation and missing audiences are
corrected in place; a provider without the ownership marker is never touched.
"""

from __future__ import annotations

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, naming
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import ControlPlaneError, ErrorKind, ManualInterventionRequired
from account_bootstrap.models import (
    Environment,
    OutcomeAction,
    Ownership,
    ProbeResult,
    ProviderRef,
    ProviderSpec,
)
from account_bootstrap.prober import probe, provider_descriptor

logger = Logger(service=SERVICE_NAME, child=True)


def default_provider_spec() -> ProviderSpec:
    return ProviderSpec(
        url=naming.OIDC_PROVIDER_URL,
        audiences=(naming.OIDC_AUDIENCE,),
        thumbprints=naming.OIDC_THUMBPRINTS,
    )


def _create(
    session: AccountSession, spec: ProviderSpec, ownership: Ownership, arn: str
) -> None:
    session.call(
        "iam",
        "create_open_id_connect_provider",
        Url=spec.url,
        ClientIDList=list(spec.audiences),
        ThumbprintList=list(spec.thumbprints),
        Tags=ownership.iam_tags(),
        resource=arn,
    )


def _reconcile(
    session: AccountSession, result: ProbeResult, spec: ProviderSpec, arn: str
) -> OutcomeAction:
    action = OutcomeAction.UNCHANGED
    if sorted(result.config.get("thumbprints", [])) != sorted(spec.thumbprints):
        session.call(
            "iam",
            "update_open_id_connect_provider_thumbprint",
            OpenIDConnectProviderArn=arn,
            ThumbprintList=list(spec.thumbprints),
            resource=arn,
        )
        logger.info("Rotated trust provider thumbprints", resource=arn)
        action = OutcomeAction.UPDATED
    live_audiences = set(result.config.get("client_ids", []))
    for audience in spec.audiences:
        if audience in live_audiences:
            continue
        session.call(
            "iam",
            "add_client_id_to_open_id_connect_provider",
            OpenIDConnectProviderArn=arn,
            ClientID=audience,
            resource=arn,
        )
        logger.info("Added trust provider audience", resource=arn, audience=audience)
        action = OutcomeAction.UPDATED
    return action


def ensure_trust_provider(
    session: AccountSession,
    environment: Environment,
    spec: ProviderSpec,
    ownership: Ownership,
) -> ProviderRef:
    """Create or converge the account's OIDC provider; idempotent."""
    descriptor = provider_descriptor(environment)
    arn = naming.provider_arn(environment.account, spec.url)
    session.checkpoint(descriptor.label())

    result = probe(session, descriptor, ownership)
    if result.conflicting:
        raise ManualInterventionRequired(
            f"trust provider exists but is not managed by this bootstrap: {result.reason}",
            resource=arn,
        )

    if result.absent:
        try:
            _create(session, spec, ownership, arn)
        except ControlPlaneError as exc:
            if exc.kind is not ErrorKind.ALREADY_EXISTS:
                raise
            logger.info("Trust provider appeared concurrently; reconciling", resource=arn)
            return ensure_trust_provider(session, environment, spec, ownership)
        logger.info(
            "Created trust provider",
            environment=environment.name,
            account_id=environment.account_id,
            resource=arn,
        )
        action = OutcomeAction.CREATED
    else:
        action = _reconcile(session, result, spec, arn)

    return ProviderRef(
        arn=arn,
        url=spec.url,
        audiences=spec.audiences,
        thumbprints=spec.thumbprints,
        action=action,
    )
