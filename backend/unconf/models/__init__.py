from unconf.models.activity_log import ActivityLog  # noqa: F401
from unconf.models.assignment import ScheduleAssignment, ScheduleState  # noqa: F401
from unconf.models.room import Room  # noqa: F401
from unconf.models.session import TalkSession  # noqa: F401
from unconf.models.timeslot import Timeslot  # noqa: F401
from unconf.models.user import SCHEDULE_EDITOR_ROLES, User, UserRole  # noqa: F401
