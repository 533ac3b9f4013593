from pytest_archon import archrule


def test_models_are_independent() -> None:
    """
    The domain model is the foundation and imports nothing else from the
    package.
    """
    (
        archrule("models_are_independent")
        .match("ibimina_mfa.models")
        .should_not_import("ibimina_mfa.factors*")
        .should_not_import("ibimina_mfa.dispatcher")
        .should_not_import("ibimina_mfa.ports")
        .should_not_import("ibimina_mfa.store")
        .check("ibimina_mfa", only_direct_imports=True)
    )


def test_factors_do_not_know_the_dispatcher() -> None:
    """
    Factor strategies are routed to; they never reach back into the
    dispatcher or a concrete storage backend.
    """
    (
        archrule("factors_layering")
        .match("ibimina_mfa.factors*")
        .should_not_import("ibimina_mfa.dispatcher")
        .should_not_import("ibimina_mfa.redis")
        .should_not_import("ibimina_mfa.store")
        .should_not_import("ibimina_mfa.limits")
        .check("ibimina_mfa", only_direct_imports=True)
    )


def test_audit_isolation() -> None:
    """
    Audit records decisions; it must not depend on how they are made.
    """
    (
        archrule("audit_isolation")
        .match("ibimina_mfa.audit*")
        .should_not_import("ibimina_mfa.factors*")
        .should_not_import("ibimina_mfa.dispatcher")
        .check("ibimina_mfa", only_direct_imports=True)
    )


def test_redis_is_optional() -> None:
    """
    Only the Redis adapters may import the redis client (``redis`` extra).
    """
    (
        archrule("redis_is_optional")
        .match("ibimina_mfa*")
        .exclude("ibimina_mfa.redis")
        .should_not_import("redis*")
        .check("ibimina_mfa", only_direct_imports=True)
    )
