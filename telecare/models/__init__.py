from telecare.models.subscription import Subscription, SubscriptionPrice
from telecare.models.user import User
from telecare.models.appointment import Appointment
from telecare.models.consultation import VideoConsultation
from telecare.models.prescription import Prescription, PrescriptionItem
from telecare.models.event import DomainEvent
from telecare.models.schedule import DoctorSchedule
