"""Deterministic real-time channel names derived from stable ids"""

from typing import Optional


def channel_name_for(appointment) -> str:
    """
    Channel an appointment's participants join.

    Dynamic plan groups share one channel per plan, provider-led groups one per
    group session, everything else one per appointment.
    """
    if appointment.is_dynamic_group and appointment.plan_id:
        return f"group-plan:{appointment.plan_id}"
    if appointment.group_session_id:
        return f"group:{appointment.group_session_id}"
    return f"appointment:{appointment.id}"


def assign_channel(appointment) -> Optional[str]:
    """Persist the channel name once; an existing name is never regenerated"""
    if not appointment.channel_name:
        appointment.channel_name = channel_name_for(appointment)
    return appointment.channel_name
